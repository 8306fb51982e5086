"""
Driver binding probe.

Sweeps /sys/bus for every device, records which driver (if any) is bound and
which modules could claim the unbound ones, then enriches identities from
lspci/lsusb and collects firmware hints and the kernel taint mask.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from ..errors import ProbeParseError
from .base import Probe, sections

SECTION_TAGS = ["SYSFS", "LSPCI", "LSUSB", "FW", "TAINT"]

TAINT_FLAGS = [
    (1, "PROPRIETARY"),
    (2, "FORCED"),
    (4, "UNSAFE"),
    (8, "ODD_BUG"),
    (16, "USER"),
    (32, "MODULE_UNSIGNED"),
]

SUBSYSTEMS = ("pci", "usb", "platform")

SCRIPT = r"""echo "---SYSFS---"
find /sys/bus -path '/sys/bus/*/devices/*' 2>/dev/null | sort -u | while IFS= read -r d; do
  [ -e "$d" ] || continue
  sub=""; [ -L "$d/subsystem" ] && sub="$(basename "$(readlink -f "$d/subsystem")")"
  drv=""; [ -L "$d/driver" ] && drv="$(basename "$(readlink -f "$d/driver")")"
  mod=""; [ -L "$d/driver/module" ] && mod="$(basename "$(readlink -f "$d/driver/module")")"
  alias=""; [ -f "$d/modalias" ] && alias="$(cat "$d/modalias" 2>/dev/null)"
  builtin="no"; if [ -n "$drv" ] && [ -z "$mod" ]; then builtin="yes"; fi
  pci_vendor=""; pci_device=""; usb_vid=""; usb_pid=""
  if [ "$sub" = "pci" ]; then
    pci_vendor="$(sed 's/^0x//' "$d/vendor" 2>/dev/null)"
    pci_device="$(sed 's/^0x//' "$d/device" 2>/dev/null)"
  elif [ "$sub" = "usb" ]; then
    usb_vid="$(cat "$d/idVendor" 2>/dev/null)"; usb_pid="$(cat "$d/idProduct" 2>/dev/null)"
  fi
  cands=""
  if [ -z "$drv" ] && [ -n "$alias" ]; then
    cands="$(modprobe -R "$alias" 2>/dev/null | tr '\n' ',' | sed 's/,$//')"
  fi
  printf 'D|%s|%s|%s|%s|%s|%s|%s|%s|%s|%s|%s\n' \
    "$d" "$sub" "$drv" "$mod" "$builtin" "$alias" "$cands" \
    "$pci_vendor" "$pci_device" "$usb_vid" "$usb_pid"
done
echo "---LSPCI---"
lspci -nnk 2>/dev/null || true
echo "---LSUSB---"
lsusb 2>/dev/null || true
echo "---FW---"
if command -v journalctl >/dev/null 2>&1; then
  journalctl -k -n 400 --no-pager 2>/dev/null | grep -Ei 'firmware|request_firmware' | tail -n 80 | sed 's/^/F|/'
else
  dmesg 2>/dev/null | grep -Ei 'firmware|request_firmware' | tail -n 80 | sed 's/^/F|/'
fi
echo "---TAINT---"
cat /proc/sys/kernel/tainted 2>/dev/null || echo 0"""

_PCI_ID = re.compile(r"\[([0-9a-fA-F]{4}:[0-9a-fA-F]{4})\]")
_PCI_SLOT = re.compile(r"^(\S+)\s+(.*)$")
_USB_LINE = re.compile(r"^Bus (\d+) Device (\d+): ID (\w{4}:\w{4}) ?(.*)$")


def decode_taint(raw: int) -> List[str]:
    return [name for bit, name in TAINT_FLAGS if raw & bit]


def parse_sysfs(lines: List[str]) -> List[Dict[str, Any]]:
    devices = []
    for line in lines:
        line = line.strip()
        if not line.startswith("D|"):
            continue
        parts = (line.split("|") + [""] * 12)[:12]
        _, path, bus, driver, module, builtin, modalias, cands, pci_v, pci_d, usb_v, usb_p = parts
        if not path or "$" in path:
            continue
        ids: Dict[str, Dict[str, str]] = {}
        if pci_v or pci_d:
            ids["pci"] = {"vendor": pci_v.lower(), "device": pci_d.lower()}
        if usb_v or usb_p:
            ids["usb"] = {"vid": usb_v.lower(), "pid": usb_p.lower()}
        devices.append({
            "path": path,
            "bus": bus,
            "driver": driver or None,
            "module": module or None,
            "builtin": builtin == "yes",
            "modalias": modalias or None,
            "candidates": [c.strip() for c in cands.split(",") if c.strip()],
            "ids": ids,
            "identity": None,
        })
    return devices


def parse_lspci(lines: List[str]) -> Dict[str, Dict[str, str]]:
    """Map ``vendor:device`` to description and bound driver from ``lspci -nnk``."""
    entries: Dict[str, Dict[str, str]] = {}
    current: Optional[Dict[str, str]] = None
    for line in lines:
        if not line.strip():
            continue
        if line[:1].isspace():
            if current is not None and "Kernel driver in use:" in line:
                current["driver"] = line.split(":", 1)[1].strip()
            continue
        current = None
        match = _PCI_SLOT.match(line.strip())
        ids = _PCI_ID.findall(line)
        if not match or not ids or ": " not in line:
            continue
        descr = line.split(": ", 1)[1]
        descr = re.sub(r"\s*\(rev [0-9a-fA-F]+\)$", "", descr).strip()
        current = {"slot": match.group(1), "description": descr, "driver": ""}
        entries[ids[-1].lower()] = current
    return entries


def parse_lsusb(lines: List[str]) -> Dict[str, str]:
    entries = {}
    for line in lines:
        match = _USB_LINE.match(line.strip())
        if match:
            entries[match.group(3).lower()] = match.group(4).strip()
    return entries


def enrich_identity(devices: List[Dict[str, Any]], pci: Dict[str, Dict[str, str]], usb: Dict[str, str]) -> None:
    for dev in devices:
        ids = dev["ids"]
        if dev["bus"] == "pci" and "pci" in ids:
            key = f"{ids['pci']['vendor']}:{ids['pci']['device']}"
            entry = pci.get(key)
            dev["identity"] = entry["description"] if entry else f"pci {key}"
        elif dev["bus"] == "usb" and "usb" in ids:
            key = f"{ids['usb']['vid']}:{ids['usb']['pid']}"
            dev["identity"] = usb.get(key) or f"usb {key}"
        else:
            dev["identity"] = dev["modalias"] or dev["path"]


def firmware_for(dev: Dict[str, Any], hints: List[str]) -> List[str]:
    names = set(dev["candidates"])
    if dev["driver"]:
        names.add(dev["driver"])
    if not names:
        return []
    return [h for h in hints if any(n in h for n in names)]


def find_target(devices: List[Dict[str, Any]], target: str) -> Optional[Dict[str, Any]]:
    wanted = target.lower()
    for dev in devices:
        if dev["path"] == target:
            return dev
        ids = dev["ids"]
        if "usb" in ids and f"{ids['usb']['vid']}:{ids['usb']['pid']}" == wanted:
            return dev
        if "pci" in ids and f"{ids['pci']['vendor']}:{ids['pci']['device']}" == wanted:
            return dev
    return None


def suggested_action(dev: Dict[str, Any]) -> str:
    if dev["driver"]:
        return "Device appears correctly bound."
    if dev["candidates"]:
        return f"Try: load `{dev['candidates'][0]}` and replug, then recheck logs."
    return "No candidates found; capture fresh logs and verify device IDs."


class DriversProbe(Probe):
    name = "drivers"
    description = "Driver bindings for PCI, USB and platform devices"
    default_timeout_ms = 30_000
    defaults = {
        "subsystem": "",
        "only_unbound": False,
        "target": "",
    }

    def validate(self, options: Dict[str, Any]) -> None:
        if options["subsystem"] and options["subsystem"] not in SUBSYSTEMS:
            raise ValueError(f"subsystem must be one of {', '.join(SUBSYSTEMS)}")

    def build_script(self, options: Dict[str, Any]) -> str:
        return SCRIPT

    def extract(self, payload: str, options: Dict[str, Any], warnings: List[str]) -> Dict[str, Any]:
        parts = sections(payload, SECTION_TAGS)
        if "SYSFS" not in parts:
            raise ProbeParseError("no sysfs device sweep in output")

        devices = parse_sysfs(parts["SYSFS"])
        if not devices:
            warnings.append("sysfs sweep listed no devices")
        pci = parse_lspci(parts.get("LSPCI", []))
        usb = parse_lsusb(parts.get("LSUSB", []))
        enrich_identity(devices, pci, usb)

        hints = [line.strip()[2:] for line in parts.get("FW", []) if line.strip().startswith("F|")]

        taint_raw = 0
        taint_lines = [line.strip() for line in parts.get("TAINT", []) if line.strip()]
        if taint_lines:
            try:
                taint_raw = int(taint_lines[-1])
            except ValueError:
                warnings.append(f"unreadable taint value {taint_lines[-1]!r}")
        elif "TAINT" not in parts:
            warnings.append("kernel taint not reported")

        if options["subsystem"]:
            devices = [d for d in devices if d["bus"] == options["subsystem"]]
        if options["only_unbound"]:
            devices = [d for d in devices if not d["driver"]]

        data: Dict[str, Any] = {
            "devices": devices,
            "total": len(devices),
            "unbound": sum(1 for d in devices if not d["driver"]),
            "buses": sorted({d["bus"] for d in devices if d["bus"]}),
            "firmware_hints": hints,
            "taint": {"raw": taint_raw, "flags": decode_taint(taint_raw)},
        }

        if options["target"]:
            match = find_target(devices, options["target"])
            data["target"] = {
                "query": options["target"],
                "found": match is not None,
                "device": match,
                "firmware": firmware_for(match, hints)[:3] if match else [],
                "action": suggested_action(match) if match else None,
            }
        return data

    def render_markdown(self, data: Dict[str, Any], options: Dict[str, Any]) -> str:
        if options.get("summary"):
            return self.render_summary(data, options)
        if "target" in data:
            return self._render_explain(data["target"])

        devices = data["devices"]
        lines = [
            "Driver scan summary",
            f"- Devices inspected: {data['total']} ({', '.join(data['buses']) or 'none'})",
            f"- Unbound devices: {data['unbound']}",
        ]
        taint = data["taint"]
        if taint["raw"]:
            lines.append(f"- Kernel taint: {', '.join(taint['flags']) or taint['raw']}")
        lines.append("")

        unbound = [d for d in devices if not d["driver"]]
        if unbound:
            lines.append("Unbound devices")
            for idx, dev in enumerate(unbound, start=1):
                fw = firmware_for(dev, data["firmware_hints"])[:2]
                lines.append(f"{idx}) {dev['path']}  [{dev['bus']}]")
                lines.append(f"   Identity: {dev['identity']}")
                if dev["modalias"]:
                    lines.append(f"   Modalias: {dev['modalias']}")
                lines.append(f"   Candidates: {', '.join(dev['candidates']) or 'none'}")
                lines.append(f"   Firmware: {' | '.join(fw) if fw else 'none reported'}")
                lines.append("")
        else:
            lines.extend(["No unbound devices found.", ""])

        bound = [d for d in devices if d["driver"]][:3]
        if bound:
            lines.append("Bound highlights")
            for dev in bound:
                bits = [f"driver {dev['driver']}"]
                if dev["module"]:
                    bits.append(f"module {dev['module']}")
                if dev["builtin"]:
                    bits.append("built-in")
                lines.append(f"- {dev['path']} -> {', '.join(bits)} ({dev['identity']})")
        return "\n".join(lines).rstrip()

    def _render_explain(self, target: Dict[str, Any]) -> str:
        dev = target["device"]
        if dev is None:
            return f"Could not find device {target['query']}."
        lines = [
            f"Device explanation: {dev['path']}",
            f"Subsystem: {dev['bus']}",
            "",
            "Binding",
            f"- BOUND: {dev['driver']}" if dev["driver"] else "- UNBOUND",
        ]
        if dev["driver"] and dev["builtin"]:
            lines.append("- Driver appears built-in (no module link).")
        if dev["module"]:
            lines.append(f"- Module: {dev['module']}")
        lines.extend(["", "Identification", f"- {dev['identity']}"])
        if dev["modalias"]:
            lines.append(f"- Modalias: {dev['modalias']}")
        lines.extend(["", "Candidates", f"- {', '.join(dev['candidates']) or 'none'}"])
        lines.extend(["", "Firmware hints"])
        if target["firmware"]:
            lines.extend(f"- {h}" for h in target["firmware"])
        else:
            lines.append("- none reported")
        lines.extend(["", "Suggested action", f"- {target['action']}"])
        return "\n".join(lines)

    def render_summary(self, data: Dict[str, Any], options: Dict[str, Any]) -> str:
        if "target" in data:
            target = data["target"]
            if not target["found"]:
                return f"{target['query']}: not found"
            dev = target["device"]
            return f"{dev['path']}: {'bound to ' + dev['driver'] if dev['driver'] else 'unbound'}"
        text = f"{data['total']} devices ({', '.join(data['buses']) or 'none'}), {data['unbound']} unbound"
        if data["taint"]["flags"]:
            text += f", taint {','.join(data['taint']['flags'])}"
        return text
