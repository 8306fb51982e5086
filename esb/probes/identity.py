"""
System identity probe: board model, kernel, distro, memory, storage,
peripherals and network addresses.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List

from ..errors import ProbeParseError
from .base import Probe, sections

SECTION_TAGS = ["MEM", "STORAGE", "USB", "NET"]

# Echoed commands and prompt wrappers that leak into older payloads.
_COMMAND_PREFIX = re.compile(r"^(>|echo\s|cat\s|uname\s|grep\s|uptime\s|free\s|df\s|lsusb|ip\s)", re.IGNORECASE)
_ARCH = re.compile(r"(armv\d+l?|aarch64|x86_64|i[3-6]86|riscv\d+|mips|arm64|powerpc|ppc64le)$", re.IGNORECASE)
_KEY_VALUE = re.compile(r"^([A-Z]+)=(.*)$")

_KEYS = {
    "MODEL": "model",
    "ARCH": "arch",
    "KERNEL": "kernel",
    "DISTRO": "distro",
    "UPTIME": "uptime",
    "CPU": "cpu",
}

SCRIPT = r"""if [ -r /proc/device-tree/model ]; then MODEL=$(tr -d '\000' < /proc/device-tree/model); else MODEL=$(hostname); fi
echo "MODEL=$MODEL"
echo "ARCH=$(uname -m)"
echo "KERNEL=$(uname -r)"
echo "DISTRO=$(grep -m1 PRETTY_NAME /etc/os-release 2>/dev/null | cut -d= -f2- | tr -d '"')"
echo "UPTIME=$(uptime -p 2>/dev/null || cut -d' ' -f1 /proc/uptime)"
echo "CPU=$(grep -m1 -E 'model name|Model|Hardware' /proc/cpuinfo 2>/dev/null | cut -d: -f2- | sed 's/^ *//')"
echo "---MEM---"
free -h 2>/dev/null
echo "---STORAGE---"
df -h / 2>/dev/null
echo "---USB---"
lsusb 2>/dev/null || true
echo "---NET---"
ip -o -4 addr show 2>/dev/null | awk '{print $2":"$4}' || true"""


def _clean(lines: List[str]) -> List[str]:
    out = []
    for line in lines:
        line = line.strip()
        if not line or line.startswith("awk:") or _COMMAND_PREFIX.match(line):
            continue
        out.append(line)
    return out


def _parse_positional(lines: List[str], identity: Dict[str, str]) -> None:
    """Older scripts printed bare values in a fixed order."""
    queue = list(lines)

    def take() -> str:
        return queue.pop(0) if queue else ""

    first = take()
    match = _ARCH.search(first)
    if match:
        identity["arch"] = match.group(0)
        identity["model"] = first[:match.start()].strip() or "(unknown)"
    else:
        identity["model"] = first
        identity["arch"] = take()
    identity["kernel"] = take()
    distro = take()
    identity["distro"] = re.sub(r'^PRETTY_NAME="?(.*?)"?$', r"\1", distro)
    identity["uptime"] = take()


def _parse_interfaces(lines: List[str]) -> List[Dict[str, str]]:
    ifaces = []
    for line in lines:
        name, sep, addr = line.partition(":")
        if not sep or not addr:
            continue
        ifaces.append({"iface": name.strip(), "addr": addr.strip()})
    return ifaces


class IdentityProbe(Probe):
    name = "identity"
    description = "System identity and resource overview"
    default_timeout_ms = 20_000

    def build_script(self, options: Dict[str, Any]) -> str:
        return SCRIPT

    def extract(self, payload: str, options: Dict[str, Any], warnings: List[str]) -> Dict[str, Any]:
        parts = sections(payload, SECTION_TAGS)
        head = _clean(parts.get("", []))

        identity: Dict[str, str] = {}
        keyed = [_KEY_VALUE.match(line) for line in head]
        if any(m and m.group(1) in _KEYS for m in keyed):
            for m in keyed:
                if m and m.group(1) in _KEYS:
                    identity[_KEYS[m.group(1)]] = m.group(2).strip().strip('"')
        elif head:
            _parse_positional(head, identity)

        if not any(identity.get(k) for k in ("model", "arch", "kernel")):
            raise ProbeParseError("no model, architecture or kernel in output")
        for key in ("model", "arch", "kernel"):
            if not identity.get(key):
                warnings.append(f"{key} not reported")

        missing = [t for t in SECTION_TAGS if t not in parts]
        if missing:
            warnings.append(f"missing sections: {', '.join(missing)}")

        data: Dict[str, Any] = {key: identity.get(key, "") for key in _KEYS.values()}
        data["memory"] = "\n".join(_clean(parts.get("MEM", [])))
        data["storage"] = "\n".join(_clean(parts.get("STORAGE", [])))
        data["usb"] = [line for line in _clean(parts.get("USB", []))]
        data["network"] = _parse_interfaces(_clean(parts.get("NET", [])))
        return data

    def render_markdown(self, data: Dict[str, Any], options: Dict[str, Any]) -> str:
        if options.get("summary"):
            return self.render_summary(data, options)

        arch = data["arch"] + (f" ({data['cpu']})" if data.get("cpu") else "")
        lines = [
            "**System Identity**",
            f"- Model: {data['model']}",
            f"- Arch: {arch}",
            f"- Kernel: {data['kernel']}",
            f"- Distro: {data['distro'] or 'unknown'}",
            "",
            "**Boot Environment**",
            f"- Uptime: {data['uptime'] or 'unknown'}",
        ]

        def block(title: str, body: str) -> None:
            lines.extend(["", f"**{title}**"])
            lines.append(f"```\n{body}\n```" if body else "- not reported")

        block("CPU & Memory", data["memory"])
        block("Filesystem & Storage", data["storage"])
        block("Peripherals", "USB:\n" + "\n".join(data["usb"]) if data["usb"] else "")
        block("Network", "\n".join(f"{i['iface']}: {i['addr']}" for i in data["network"]))
        return "\n".join(lines)

    def render_summary(self, data: Dict[str, Any], options: Dict[str, Any]) -> str:
        mem_lines = data["memory"].splitlines()
        fields = mem_lines[1].split() if len(mem_lines) > 1 else []
        ram = f"{fields[2]}/{fields[1]}" if len(fields) > 2 else "?"
        return (
            f"{data['model']} | {data['arch']} | {data['kernel']} "
            f"| RAM {ram} | Uptime {data['uptime'] or '?'}"
        )
