"""
Live device-tree probe.

Lists the nodes under the device-tree root (one or two levels deep) with
their compatible strings and reg words, and buckets node names into rough
categories for an at-a-glance view.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List

from ..errors import ProbeParseError
from .base import Probe

FORMATS = ("markdown", "table", "json")

SCRIPT_TEMPLATE = r"""DTROOT=/proc/device-tree
[ -d /sys/firmware/devicetree/base ] && DTROOT=/sys/firmware/devicetree/base
find "$DTROOT" -mindepth 1 -maxdepth {depth} -type d 2>/dev/null | while IFS= read -r n; do
  name="$(basename "$n")"
  comp=""; [ -f "$n/compatible" ] && comp="$(tr '\000' ' ' < "$n/compatible" | head -c 120)"
  reg=""; [ -f "$n/reg" ] && reg="$(hexdump -v -e '1/4 "%08x "' "$n/reg" 2>/dev/null)"
  echo "N|$name|$comp|$reg"
done"""

_NODE_LINE = re.compile(r"^N\|", re.MULTILINE)

CATEGORIES = [
    ("communication", re.compile(r"^(i2c|spi|uart|serial|can|usb|eth|ethernet)")),
    ("processing", re.compile(r"^(cpu|pru|pruss|gpu|cores|processor)")),
    ("io", re.compile(r"^(gpio|pwm|adc|tscadc|led|fan|sensor|touch|display|screen)")),
    ("storage", re.compile(r"^(mmc|sd|emmc|nand|flash|spi-flash|ocmcram|ram|memory)")),
]


def parse_nodes(payload: str) -> List[Dict[str, Any]]:
    nodes = []
    for raw in payload.splitlines():
        line = raw.strip()
        idx = line.find("N|")
        if idx == -1:
            continue
        # tolerate a prompt glued to the front of the line
        fields = (line[idx:].split("|") + ["", "", ""])[:4]
        _, name, compatible, reg = fields
        if not name or "$" in name:
            continue
        nodes.append({
            "node": name,
            "compatible": [c for c in re.split(r"[\s,]+", compatible) if c],
            "reg": ["0x" + w.lower() for w in reg.split() if w],
        })
    return nodes


def categorize(nodes: List[Dict[str, Any]]) -> Dict[str, List[str]]:
    out: Dict[str, List[str]] = {name: [] for name, _ in CATEGORIES}
    out["system"] = []
    for node in nodes:
        name = node["node"]
        # unit addresses (uart@44e09000) don't change the category
        base = name.split("@", 1)[0].lower()
        bucket = "system"
        for category, pattern in CATEGORIES:
            if pattern.match(base):
                bucket = category
                break
        if name not in out[bucket]:
            out[bucket].append(name)
    return out


class DeviceTreeProbe(Probe):
    name = "device_tree"
    description = "Live device-tree nodes with compatible strings and addresses"
    default_timeout_ms = 30_000
    min_score = 1
    defaults = {
        "deep": False,
        "format": "markdown",
    }

    def validate(self, options: Dict[str, Any]) -> None:
        if options["format"] not in FORMATS:
            raise ValueError(f"format must be one of {', '.join(FORMATS)}")

    def build_script(self, options: Dict[str, Any]) -> str:
        return SCRIPT_TEMPLATE.replace("{depth}", "2" if options.get("deep") else "1")

    def score(self, payload: str) -> int:
        return len(_NODE_LINE.findall(payload))

    def extract(self, payload: str, options: Dict[str, Any], warnings: List[str]) -> Dict[str, Any]:
        nodes = parse_nodes(payload)
        if not nodes:
            raise ProbeParseError("no device-tree nodes in output (no device tree on this system?)")
        return {
            "nodes": nodes,
            "count": len(nodes),
            "depth": 2 if options["deep"] else 1,
            "categories": categorize(nodes),
        }

    def render_markdown(self, data: Dict[str, Any], options: Dict[str, Any]) -> str:
        nodes = data["nodes"]
        if options["format"] == "json":
            return json.dumps(nodes, indent=2)
        if options["format"] == "table":
            rows = ["| Node | Compatible | Addresses |", "|---|---|---|"]
            rows.extend(
                f"| {n['node']} | {', '.join(n['compatible'])} | {', '.join(n['reg'])} |" for n in nodes
            )
            return "\n".join(rows)
        if options.get("summary"):
            return self.render_summary(data, options)

        lines = ["Device-Tree Nodes"]
        for n in nodes:
            lines.append(f"- **{n['node']}**")
            if n["compatible"]:
                lines.append(f"  - Compatible: {', '.join(n['compatible'])}")
            if n["reg"]:
                lines.append(f"  - Addresses: {', '.join(n['reg'])}")
        lines.extend(["", "Categories"])
        for category, names in data["categories"].items():
            if names:
                lines.append(f"- {category}: {', '.join(names)}")
        return "\n".join(lines)

    def render_summary(self, data: Dict[str, Any], options: Dict[str, Any]) -> str:
        parts = []
        for n in data["nodes"]:
            reg = n["reg"][0] if n["reg"] else "?"
            parts.append(f"{n['node']}: {reg}{'...' if len(n['reg']) > 1 else ''}")
        return " | ".join(parts)
