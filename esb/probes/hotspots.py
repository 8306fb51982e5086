"""
Kernel hotspot sampling.

Two snapshots of /proc/stat, /proc/interrupts and /proc/softirqs taken
``duration`` seconds apart give per-CPU load, the split of busy time between
user, system, irq and softirq, and the busiest interrupt lines. When perf is
available on the target, the sampling window doubles as a perf recording and
its top symbols are reported too.
"""

from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..errors import ProbeParseError
from .base import Probe

SNAPSHOT_TAGS = ["STAT_A", "IRQS_A", "SOFT_A", "STAT_B", "IRQS_B", "SOFT_B"]
MIN_SCORE = 15
BUSY_CORE_PCT = 80.0

SCRIPT_TEMPLATE = """echo ---STAT_A---
cat /proc/stat
echo ---IRQS_A---
cat /proc/interrupts
echo ---SOFT_A---
cat /proc/softirqs
PERF_DATA=/tmp/esb_perf_$$.data
if command -v perf >/dev/null 2>&1 && perf record -q -a -o "$PERF_DATA" -- sleep {duration} >/dev/null 2>&1; then
  HAVE_PERF=1
else
  HAVE_PERF=0
  sleep {duration}
fi
echo ---STAT_B---
cat /proc/stat
echo ---IRQS_B---
cat /proc/interrupts
echo ---SOFT_B---
cat /proc/softirqs
if [ "$HAVE_PERF" = 1 ]; then
  echo ---PERF---
  perf report --stdio -n --no-children -i "$PERF_DATA" 2>/dev/null | grep -v '^#' | grep '%' | head -n {rows}
fi
rm -f "$PERF_DATA"
"""

_SECTION = re.compile(r"^\s*---([A-Z_]+)---\s*$")
_INTERRUPT_ROW = re.compile(r"^\s*(\S+):\s+([0-9\s]+?)(?:\s+([^\d\s].*))?$")
_PERF_ROW = re.compile(r"^\s*([0-9.]+)%\s+\S+\s+\S+\s+(.+)$")
_CPU_ROW = re.compile(r"^cpu\s+\d+", re.MULTILINE)
_IRQ_SHAPE = re.compile(r"^\s*\d+:\s+\d", re.MULTILINE)


@dataclass
class CpuTimes:
    user: int = 0
    nice: int = 0
    system: int = 0
    idle: int = 0
    iowait: int = 0
    irq: int = 0
    softirq: int = 0
    steal: int = 0

    @property
    def busy(self) -> int:
        return self.user + self.nice + self.system + self.irq + self.softirq + self.steal

    @property
    def idle_all(self) -> int:
        return self.idle + self.iowait


def score_payload(payload: str) -> int:
    """Confidence that a payload is real sampler output rather than the echoed script."""
    score = sum(2 for tag in SNAPSHOT_TAGS if f"---{tag}---" in payload)
    if _CPU_ROW.search(payload):
        score += 3
    if _IRQ_SHAPE.search(payload):
        score += 1
    score += min(3, len(payload) // 5000)
    return score


def split_sections(payload: str) -> Dict[str, List[str]]:
    out: Dict[str, List[str]] = {}
    current: Optional[str] = None
    for line in payload.replace("\r", "").splitlines():
        match = _SECTION.match(line)
        if match:
            current = match.group(1)
            out[current] = []
        elif current is not None:
            out[current].append(line)
    return out


def parse_proc_stat(lines: List[str]) -> Dict[str, CpuTimes]:
    stats = {}
    for line in lines:
        if not line.startswith("cpu"):
            continue
        parts = line.split()
        if len(parts) < 8:
            continue
        values = []
        for v in parts[1:9]:
            try:
                values.append(int(v))
            except ValueError:
                values.append(0)
        values += [0] * (8 - len(values))
        stats[parts[0]] = CpuTimes(*values)
    return stats


def parse_counters(lines: List[str]) -> Dict[str, Dict[str, Any]]:
    """Sum per-CPU counts of /proc/interrupts or /proc/softirqs rows."""
    rows = {}
    for line in lines:
        match = _INTERRUPT_ROW.match(line)
        if not match:
            continue
        counts = [int(v) for v in match.group(2).split()]
        rows[match.group(1)] = {"count": sum(counts), "label": (match.group(3) or "").strip()}
    return rows


def diff_counts(a: Dict[str, Dict[str, Any]], b: Dict[str, Dict[str, Any]]) -> Dict[str, int]:
    return {
        key: max(0, b.get(key, {}).get("count", 0) - a.get(key, {}).get("count", 0))
        for key in set(a) | set(b)
    }


def parse_perf(lines: List[str], top: int) -> List[Dict[str, Any]]:
    entries = []
    for line in lines:
        match = _PERF_ROW.match(line)
        if not match:
            continue
        rest = match.group(2).strip()
        module = "kernel"
        mod = re.search(r"\[([^\]]+)\]", rest)
        if mod:
            module = mod.group(1)
            rest = re.sub(r"\[[^\]]+\]\s*", "", rest, count=1)
        # [k] / [.] marks kernel or user space
        rest = re.sub(r"^\[[k.]\]\s*", "", rest)
        entries.append({"percent": float(match.group(1)), "symbol": rest.strip(), "module": module})
        if len(entries) >= top:
            break
    return entries


def _pct(part: float, whole: float) -> float:
    return round(part / whole * 100, 1) if whole > 0 else 0.0


def load_descriptor(avg: float) -> str:
    if avg >= 50:
        return "under heavy CPU load"
    if avg >= 20:
        return "moderately loaded"
    if avg >= 5:
        return "lightly loaded"
    return "mostly idle"


class HotspotsProbe(Probe):
    name = "hotspots"
    description = "Where kernel CPU time went during a short sampling window"
    default_timeout_ms = 30_000
    min_score = MIN_SCORE
    defaults = {
        "duration": 5,
        "top": 8,
    }

    def validate(self, options: Dict[str, Any]) -> None:
        if options["duration"] <= 0:
            raise ValueError("duration must be > 0")
        if options["top"] <= 0:
            raise ValueError("top must be > 0")

    def timeout_ms(self, options: Dict[str, Any]) -> int:
        return int(max(options["duration"] * 1000 + 15_000, 30_000))

    def build_script(self, options: Dict[str, Any]) -> str:
        return (
            SCRIPT_TEMPLATE
            .replace("{duration}", str(options["duration"]))
            .replace("{rows}", str(options["top"] + 5))
        )

    def score(self, payload: str) -> int:
        return score_payload(payload)

    def extract(self, payload: str, options: Dict[str, Any], warnings: List[str]) -> Dict[str, Any]:
        parts = split_sections(payload)
        missing = [t for t in SNAPSHOT_TAGS if t not in parts]
        if "STAT_A" in missing or "STAT_B" in missing:
            raise ProbeParseError("CPU statistics snapshots missing from output")
        if missing:
            warnings.append(f"missing sections: {', '.join(missing)}")

        stat_a = parse_proc_stat(parts["STAT_A"])
        stat_b = parse_proc_stat(parts["STAT_B"])
        if not stat_a or not stat_b:
            raise ProbeParseError("no cpu rows in /proc/stat snapshots")
        irq_a = parse_counters(parts.get("IRQS_A", []))
        irq_b = parse_counters(parts.get("IRQS_B", []))
        soft_a = parse_counters(parts.get("SOFT_A", []))
        soft_b = parse_counters(parts.get("SOFT_B", []))

        per_cpu: Dict[str, float] = {}
        max_cpu = {"cpu": "cpu0", "load": 0.0}
        for cpu, a in stat_a.items():
            b = stat_b.get(cpu)
            if cpu == "cpu" or b is None:
                continue
            busy = b.busy - a.busy
            total = busy + (b.idle_all - a.idle_all)
            if total <= 0:
                continue
            load = _pct(busy, total)
            per_cpu[cpu] = load
            if load > max_cpu["load"]:
                max_cpu = {"cpu": cpu, "load": load}

        irq_deltas = diff_counts(irq_a, irq_b)
        soft_deltas = diff_counts(soft_a, soft_b)

        split = {"irq": 0.0, "softirq": 0.0, "system": 0.0, "user": 0.0}
        split_basis = "cpu_time"
        agg_a, agg_b = stat_a.get("cpu"), stat_b.get("cpu")
        if agg_a and agg_b:
            busy = agg_b.busy - agg_a.busy
            if busy > 0:
                split = {
                    "irq": _pct(agg_b.irq - agg_a.irq, busy),
                    "softirq": _pct(agg_b.softirq - agg_a.softirq, busy),
                    "system": _pct(agg_b.system - agg_a.system, busy),
                    "user": _pct((agg_b.user + agg_b.nice) - (agg_a.user + agg_a.nice), busy),
                }
        if not any(split.values()):
            irq_total = sum(irq_deltas.values())
            soft_total = sum(soft_deltas.values())
            if irq_total or soft_total:
                # proportions of interrupt activity, not CPU time
                split_basis = "interrupt_counts"
                split["irq"] = _pct(irq_total, irq_total + soft_total)
                split["softirq"] = _pct(soft_total, irq_total + soft_total)

        hottest_irq = {"irq": "", "delta": 0, "label": ""}
        for irq, delta in irq_deltas.items():
            if delta > hottest_irq["delta"]:
                hottest_irq = {"irq": irq, "delta": delta, "label": irq_b.get(irq, {}).get("label", "")}
        hottest_soft = {"name": "", "delta": 0}
        for name, delta in soft_deltas.items():
            if delta > hottest_soft["delta"]:
                hottest_soft = {"name": name, "delta": delta}

        top_irqs = sorted(irq_deltas.items(), key=lambda kv: (-kv[1], kv[0]))[:8]

        perf = parse_perf(parts.get("PERF", []), options["top"])
        modules: Dict[str, float] = defaultdict(float)
        for entry in perf:
            modules[entry["module"]] += entry["percent"]
        module_summary = sorted(modules.items(), key=lambda kv: -kv[1])[:4]

        return {
            "window_s": options["duration"],
            "per_cpu_load": per_cpu,
            "max_cpu": max_cpu,
            "context_split": split,
            "split_basis": split_basis,
            "hottest_irq": hottest_irq,
            "hottest_softirq": hottest_soft,
            "top_irq_deltas": [
                {"irq": irq, "delta": delta, "label": irq_b.get(irq, {}).get("label", "")}
                for irq, delta in top_irqs if delta > 0
            ],
            "top_functions": perf,
            "modules": [{"module": m, "percent": round(p, 1)} for m, p in module_summary],
        }

    def render_markdown(self, data: Dict[str, Any], options: Dict[str, Any]) -> str:
        if options.get("summary"):
            return self.render_summary(data, options)

        window = data["window_s"]
        loads = list(data["per_cpu_load"].values())
        avg = sum(loads) / len(loads) if loads else 0.0
        ranked = sorted(data["per_cpu_load"].items(), key=lambda kv: -kv[1])
        busy = [cpu.upper() for cpu, load in ranked if load >= BUSY_CORE_PCT]

        split = data["context_split"]
        total = sum(split.values())
        norm = {k: (round(v / total * 100, 1) if total > 0 else v) for k, v in split.items()}

        lines = [
            "Kernel Hotspots Summary",
            f"Window: {window} s",
            f"CPU utilization: avg {avg:.1f}% across {len(loads)} CPUs ({load_descriptor(avg)}); "
            f"peak {data['max_cpu']['cpu'].upper()} {data['max_cpu']['load']:.1f}%.",
        ]
        if busy:
            lines.append(f"Cores >=80%: {', '.join(busy)} ({len(busy)}).")
        lines.append(
            f"Time split (normalised): user {norm['user']:.1f}% | system {norm['system']:.1f}% "
            f"| irq {norm['irq']:.1f}% | softirq {norm['softirq']:.1f}%."
        )
        if data["split_basis"] == "interrupt_counts":
            lines.append("(no CPU time moved; split shows interrupt vs softirq counts)")

        funcs = data["top_functions"]
        if funcs:
            lines.append(f"Top path: {funcs[0]['symbol']} {funcs[0]['percent']:.1f}%.")
        else:
            lines.append("Top path: n/a (no perf samples; perf missing or not permitted).")

        irq = data["hottest_irq"]
        if irq["irq"]:
            rate = irq["delta"] / window if window else 0
            lines.append(f"Hottest IRQ: {irq['irq']} ({irq['label'] or '?'}): {irq['delta']} hits (~{rate:.1f}/s).")
        else:
            lines.append("Hottest IRQ: n/a.")
        soft = data["hottest_softirq"]
        if soft["name"]:
            rate = soft["delta"] / window if window else 0
            lines.append(f"Hottest softirq: {soft['name']}: {soft['delta']} hits (~{rate:.1f}/s).")
        else:
            lines.append("Hottest softirq: n/a.")

        if data["modules"]:
            lines.append("Modules by samples: " + " | ".join(f"{m['module']} {m['percent']:.1f}%" for m in data["modules"]) + ".")
        if funcs:
            lines.append("Top functions: " + " | ".join(
                f"{f['symbol']} {f['percent']:.1f}% [{f['module']}]" for f in funcs[:5]
            ) + ".")
        if data["top_irq_deltas"]:
            lines.append("Top IRQ deltas: " + ", ".join(f"{t['irq']}={t['delta']}" for t in data["top_irq_deltas"]))
        if ranked:
            lines.append("Per-CPU: " + " | ".join(f"{cpu.upper()} {load:.1f}%" for cpu, load in ranked))
        return "\n".join(lines)

    def render_summary(self, data: Dict[str, Any], options: Dict[str, Any]) -> str:
        loads = list(data["per_cpu_load"].values())
        avg = sum(loads) / len(loads) if loads else 0.0
        irq = data["hottest_irq"]
        hot = f"{irq['irq']} ({irq['label']})" if irq["irq"] else "n/a"
        return (
            f"avg {avg:.1f}% over {len(loads)} CPUs, peak {data['max_cpu']['cpu']} "
            f"{data['max_cpu']['load']:.1f}%, hottest IRQ {hot}"
        )
