"""
Real-time readiness diagnostics.

Runs a broad RT checklist (preemption model, interrupt affinity, scheduling
limits, CPU isolation, power states, boot parameters) and reports a handful of
highlights next to the full output.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from ..errors import ProbeParseError
from .base import Probe

BEGIN_TAG = "===== RT_ANALYSIS_BEGIN"
END_TAG = "===== RT_ANALYSIS_END"

SCRIPT = r"""echo "===== RT_ANALYSIS_BEGIN ====="
echo "KERNEL_RELEASE: $(uname -r)"
echo "KERNEL_VERSION: $(uname -v)"
grep -E "(PREEMPT|RT)" /boot/config-$(uname -r) 2>/dev/null || echo "Config not available"
[ -f /proc/config.gz ] && zcat /proc/config.gz | grep -E "(PREEMPT|RT)"
cat /sys/kernel/realtime 2>/dev/null || echo "Not RT kernel"

cat /proc/interrupts
cat /proc/softirqs
for irq in $(ls /proc/irq/ 2>/dev/null); do
  case "$irq" in
    *[!0-9]*) ;;
    *) echo "IRQ $irq: $(cat /proc/irq/$irq/smp_affinity 2>/dev/null)" ;;
  esac
done
ps aux 2>/dev/null | grep -E "\[irq/[0-9]" | grep -v grep
head -20 /proc/timer_list 2>/dev/null
echo "CLOCKSOURCE: $(cat /sys/devices/system/clocksource/clocksource0/current_clocksource 2>/dev/null)"
echo "AVAILABLE_CLOCKSOURCE: $(cat /sys/devices/system/clocksource/clocksource0/available_clocksource 2>/dev/null)"

ps -eTo pid,tid,cls,rtprio,pri,psr,comm 2>/dev/null | grep -E "(FF|RR)" | head -20
for pid in $(ps -eo pid,cls 2>/dev/null | awk '$2 ~ /FF|RR/ {print $1}'); do
  echo "PID $pid affinity: $(taskset -p $pid 2>/dev/null | cut -d: -f2)"
done
head -50 /proc/sched_debug 2>/dev/null || echo "sched_debug not available"
echo "RT Period: $(cat /proc/sys/kernel/sched_rt_period_us 2>/dev/null)"
echo "RT Runtime: $(cat /proc/sys/kernel/sched_rt_runtime_us 2>/dev/null)"

head -20 /proc/locks 2>/dev/null
dmesg 2>/dev/null | grep -i "priority\|inversion" | tail -10

echo "ISOLATED: $(cat /sys/devices/system/cpu/isolated 2>/dev/null)"
echo "NOHZ_FULL: $(cat /sys/devices/system/cpu/nohz_full 2>/dev/null)"
for gov in /sys/devices/system/cpu/cpu*/cpufreq/scaling_governor; do
  [ -f "$gov" ] && echo "$gov: $(cat "$gov")"
done
for state in /sys/devices/system/cpu/cpu*/cpuidle/state*/name; do
  [ -f "$state" ] && echo "$state: $(cat "$state")"
done
echo "CPUS_ONLINE: $(cat /sys/devices/system/cpu/online 2>/dev/null)"

cat /proc/buddyinfo 2>/dev/null
cat /sys/kernel/mm/transparent_hugepage/enabled 2>/dev/null
grep -E "(VmLck|VmPin)" /proc/*/status 2>/dev/null | grep -v ": 0 kB" | head -10

ps aux 2>/dev/null | grep -E "(migration|rcu|ksoftirqd|watchdog)" | grep -v grep | head -10
grep -E "(flags|Features)" /proc/cpuinfo 2>/dev/null | head -2
systemd-detect-virt 2>/dev/null || echo "systemd-detect-virt not available"

cat /proc/cmdline
for p in $(cat /proc/cmdline); do
  case "$p" in
    isolcpus*|nohz*|rcu_nocb*|processor.max_cstate*|intel_idle.max_cstate*) echo "BOOT_PARAM: $p" ;;
  esac
done

command -v cyclictest >/dev/null 2>&1 && echo "cyclictest available"
echo "===== RT_ANALYSIS_END ====="
"""

_LABEL = re.compile(r"^(KERNEL_RELEASE|KERNEL_VERSION|CLOCKSOURCE|AVAILABLE_CLOCKSOURCE|ISOLATED|NOHZ_FULL|CPUS_ONLINE|BOOT_PARAM):\s*(.*)$")
_RT_LIMIT = re.compile(r"^RT (Period|Runtime):\s*(-?\d+)")
_CONFIG = re.compile(r"^(CONFIG_\w*(?:PREEMPT|RT)\w*)=(\w+)")
_PREEMPT_WORDS = re.compile(r"\b(PREEMPT_RT|PREEMPT_DYNAMIC|PREEMPT)\b")


def analysis_slice(payload: str) -> Optional[str]:
    """The last complete BEGIN..END block, tags included."""
    end = payload.rfind(END_TAG)
    if end == -1:
        return None
    begin = payload.rfind(BEGIN_TAG, 0, end)
    if begin == -1:
        return None
    line_end = payload.find("\n", end)
    return payload[begin:line_end if line_end != -1 else len(payload)].strip()


def _int_or_none(value: str) -> Optional[int]:
    try:
        return int(value)
    except ValueError:
        return None


class RealtimeProbe(Probe):
    name = "realtime"
    description = "Real-time readiness: preemption, isolation, RT limits"
    default_timeout_ms = 60_000

    def build_script(self, options: Dict[str, Any]) -> str:
        return SCRIPT

    def extract(self, payload: str, options: Dict[str, Any], warnings: List[str]) -> Dict[str, Any]:
        block = analysis_slice(payload)
        if block is None:
            if BEGIN_TAG in payload:
                raise ProbeParseError("diagnostics started but never finished")
            raise ProbeParseError("no RT analysis block in output")

        labels: Dict[str, str] = {}
        boot_params: List[str] = []
        config: Dict[str, str] = {}
        limits: Dict[str, Optional[int]] = {"period_us": None, "runtime_us": None}
        version_flags: List[str] = []
        not_rt = False
        cyclictest = False

        lines = [line.strip() for line in block.splitlines() if line.strip()]
        for line in lines:
            m = _LABEL.match(line)
            if m:
                if m.group(1) == "BOOT_PARAM":
                    boot_params.append(m.group(2).strip())
                else:
                    labels[m.group(1)] = m.group(2).strip()
                continue
            m = _RT_LIMIT.match(line)
            if m:
                key = "period_us" if m.group(1) == "Period" else "runtime_us"
                limits[key] = _int_or_none(m.group(2))
                continue
            m = _CONFIG.match(line)
            if m:
                config[m.group(1)] = m.group(2)
                continue
            if line == "Not RT kernel":
                not_rt = True
            elif line == "cyclictest available":
                cyclictest = True

        for word in _PREEMPT_WORDS.findall(labels.get("KERNEL_VERSION", "")):
            if word not in version_flags:
                version_flags.append(word)

        if "KERNEL_RELEASE" not in labels:
            warnings.append("kernel release not reported")

        rt = (
            "PREEMPT_RT" in version_flags
            or config.get("CONFIG_PREEMPT_RT") == "y"
            or config.get("CONFIG_PREEMPT_RT_FULL") == "y"
        )
        if rt and not_rt:
            warnings.append("/sys/kernel/realtime missing on an RT-configured kernel")

        period, runtime = limits["period_us"], limits["runtime_us"]
        throttling = None
        if period is not None and runtime is not None:
            # runtime of -1 disables throttling
            throttling = 0 <= runtime < period

        return {
            "kernel_release": labels.get("KERNEL_RELEASE", ""),
            "kernel_version": labels.get("KERNEL_VERSION", ""),
            "preempt": {
                "rt": rt,
                "version_flags": version_flags,
                "config": config,
            },
            "clocksource": labels.get("CLOCKSOURCE", ""),
            "available_clocksources": labels.get("AVAILABLE_CLOCKSOURCE", "").split(),
            "isolated_cpus": labels.get("ISOLATED", ""),
            "nohz_full": labels.get("NOHZ_FULL", ""),
            "cpus_online": labels.get("CPUS_ONLINE", ""),
            "rt_limits": {**limits, "throttling": throttling},
            "boot_params": boot_params,
            "cyclictest": cyclictest,
            "line_count": len(lines),
            "diagnostics": "\n".join(lines),
        }

    def render_markdown(self, data: Dict[str, Any], options: Dict[str, Any]) -> str:
        if options.get("summary"):
            return self.render_summary(data, options)
        preempt = data["preempt"]
        limits = data["rt_limits"]
        throttling = {True: "enabled", False: "disabled", None: "unknown"}[limits["throttling"]]
        lines = [
            "### Real-Time Analysis Results",
            f"- Kernel: {data['kernel_release'] or 'unknown'}",
            f"- Preemption: {', '.join(preempt['version_flags']) or 'none reported'}"
            f" ({'PREEMPT_RT' if preempt['rt'] else 'not an RT kernel'})",
            f"- Clocksource: {data['clocksource'] or 'unknown'}",
            f"- Isolated CPUs: {data['isolated_cpus'] or 'none'}",
            f"- nohz_full: {data['nohz_full'] or 'none'}",
            f"- RT period/runtime: {limits['period_us']} / {limits['runtime_us']} us, throttling {throttling}",
            f"- RT boot params: {', '.join(data['boot_params']) or 'none'}",
            f"- cyclictest: {'available' if data['cyclictest'] else 'not installed'}",
            "",
            f"Captured {data['line_count']} lines of diagnostics.",
            "",
            "#### Full Diagnostics",
            "```",
            data["diagnostics"],
            "```",
        ]
        return "\n".join(lines)

    def render_summary(self, data: Dict[str, Any], options: Dict[str, Any]) -> str:
        model = "PREEMPT_RT" if data["preempt"]["rt"] else "non-RT"
        return (
            f"kernel {data['kernel_release'] or '?'} | {model} | clocksource "
            f"{data['clocksource'] or '?'} | isolated {data['isolated_cpus'] or 'none'}"
        )
