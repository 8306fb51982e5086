"""
Tests for the diagnostic probes: parsers against captured payloads, and
run_probe through sessions on scripted devices.
"""

from __future__ import annotations

import json
import platform
import shutil

import pytest

from esb.errors import FramedTimeout
from esb.event_emitter import EventEmitter
from esb.implementations import RealClock, RealFileSystem
from esb.mocks import MockTransport, fixed_output
from esb.probes import PROBES, get_probe, list_probes, run_probe
from esb.probes.base import coerce_option, sections
from esb.session import Session

IDENTITY_PAYLOAD = """MODEL=BeagleBone Black
ARCH=armv7l
KERNEL=5.10.168-ti-r71
DISTRO=Debian GNU/Linux 11 (bullseye)
UPTIME=up 2 hours, 3 minutes
CPU=ARMv7 Processor rev 2 (v7l)
---MEM---
               total        used        free      shared  buff/cache   available
Mem:           483Mi       120Mi       200Mi       5.0Mi       162Mi       350Mi
Swap:             0B          0B          0B
---STORAGE---
Filesystem      Size  Used Avail Use% Mounted on
/dev/mmcblk0p1   15G  3.1G   11G  23% /
---USB---
Bus 001 Device 001: ID 1d6b:0002 Linux Foundation 2.0 root hub
---NET---
eth0:192.168.7.2/24
usb0:192.168.6.2/24"""

DRIVERS_PAYLOAD = """---SYSFS---
D|/sys/bus/pci/devices/0000:00:1f.3|pci|snd_hda_intel|snd_hda_intel|no|pci:v00008086d0000A348||8086|a348||
D|/sys/bus/usb/devices/1-1|usb|||no|usb:v0BDAp8179d0000|r8188eu,rtl8xxxu|||0bda|8179
D|/sys/bus/platform/devices/serial8250|platform|serial8250||yes|platform:serial8250||||
---LSPCI---
00:1f.3 Audio device [0403]: Intel Corporation Cannon Lake PCH cAVS [8086:a348] (rev 10)
\tSubsystem: Dell Device [1028:0869]
\tKernel driver in use: snd_hda_intel
---LSUSB---
Bus 001 Device 003: ID 0bda:8179 Realtek Semiconductor Corp. RTL8188EUS 802.11n
---FW---
F|[    3.2] r8188eu 1-1:1.0: Direct firmware load for rtlwifi/rtl8188eufw.bin failed
---TAINT---
1"""

DEVICE_TREE_PAYLOAD = """N|cpus||
N|serial@44e09000|ti,am3352-uart ti,omap3-uart|44e09000 00002000
N|i2c@44e0b000|ti,omap4-i2c|44E0B000 00001000
N|memory@80000000||80000000 20000000
N|$name|$comp|$reg"""

HOTSPOTS_PAYLOAD = """---STAT_A---
cpu  1000 0 500 8000 100 50 50 0 0 0
cpu0 500 0 250 4000 50 25 25 0 0 0
cpu1 500 0 250 4000 50 25 25 0 0 0
intr 12345
---IRQS_A---
           CPU0       CPU1
 24:        100        200   GICv3  27 Level     arch_timer
 56:         10          0   GICv3  45 Level     eth0
---SOFT_A---
                    CPU0       CPU1
          TIMER:       50         60
         NET_RX:        5          0
---STAT_B---
cpu  1600 0 700 8800 100 150 150 0 0 0
cpu0 1000 0 400 4100 50 75 75 0 0 0
cpu1 600 0 300 4700 50 75 75 0 0 0
---IRQS_B---
           CPU0       CPU1
 24:        400        500   GICv3  27 Level     arch_timer
 56:        510          0   GICv3  45 Level     eth0
---SOFT_B---
                    CPU0       CPU1
          TIMER:      150        160
         NET_RX:      305          0"""

PERF_SECTION = """
---PERF---
    12.50%  250  swapper  [kernel.kallsyms]  [k] default_idle_call
     5.00%  100  irq/56-eth0  [macb]  [k] macb_poll"""

REALTIME_PAYLOAD = """===== RT_ANALYSIS_BEGIN =====
KERNEL_RELEASE: 5.10.120-rt70
KERNEL_VERSION: #1 SMP PREEMPT_RT Thu Jun 2 2022
CONFIG_PREEMPT_RT=y
CONFIG_PREEMPT=y
1
CLOCKSOURCE: arch_sys_counter
AVAILABLE_CLOCKSOURCE: arch_sys_counter
RT Period: 1000000
RT Runtime: 950000
ISOLATED: 2-3
NOHZ_FULL: 2-3
CPUS_ONLINE: 0-3
BOOT_PARAM: isolcpus=2,3
BOOT_PARAM: nohz_full=2-3
cyclictest available
===== RT_ANALYSIS_END ====="""


class TestRegistry:
    """Tests for probe lookup."""

    def test_list_probes(self):
        assert list_probes() == ["device_tree", "drivers", "hotspots", "identity", "realtime"]

    def test_get_probe_accepts_dashes(self):
        assert get_probe("device-tree") is PROBES["device_tree"]

    def test_unknown_probe_names_known_ones(self):
        with pytest.raises(KeyError, match="identity"):
            get_probe("nope")

    def test_every_probe_has_a_script(self):
        for name in list_probes():
            probe = get_probe(name)
            assert probe.description
            assert probe.build_script(probe.normalize_options()).strip()


class TestOptions:
    """Tests for option coercion and validation."""

    def test_coerce_types_follow_defaults(self):
        assert coerce_option("deep", "yes", False) is True
        assert coerce_option("deep", "0", False) is False
        assert coerce_option("top", "12", 8) == 12
        assert coerce_option("format", "table", "markdown") == "table"

    def test_bad_boolean(self):
        with pytest.raises(ValueError, match="boolean"):
            coerce_option("deep", "maybe", False)

    def test_unknown_option_lists_known(self):
        with pytest.raises(ValueError, match="duration"):
            get_probe("hotspots").normalize_options({"durration": "3"})

    def test_dashes_become_underscores(self):
        opts = get_probe("drivers").normalize_options({"only-unbound": "true"})
        assert opts["only_unbound"] is True

    def test_probe_specific_validation(self):
        with pytest.raises(ValueError):
            get_probe("drivers").normalize_options({"subsystem": "isa"})
        with pytest.raises(ValueError):
            get_probe("hotspots").normalize_options({"duration": "0"})
        with pytest.raises(ValueError):
            get_probe("device_tree").normalize_options({"format": "xml"})


class TestSections:
    def test_splits_on_known_tags(self):
        parts = sections("head\n---A---\none\n---B---\ntwo\n---C---\n", ["A", "B"])
        assert parts[""] == ["head"]
        assert parts["A"] == ["one"]
        assert parts["B"] == ["two", "---C---"]


class TestIdentityProbe:
    """Tests for the identity parser."""

    def test_minimal_key_value_payload(self):
        """MODEL/ARCH/KERNEL alone give model, arch and kernel."""
        report = get_probe("identity").parse("MODEL=Foo\nARCH=arm64\nKERNEL=5.10")
        assert not report.degraded
        assert report.data["model"] == "Foo"
        assert report.data["arch"] == "arm64"
        assert report.data["kernel"] == "5.10"
        assert any("missing sections" in w for w in report.warnings)

    def test_full_payload(self):
        report = get_probe("identity").parse(IDENTITY_PAYLOAD)
        data = report.data
        assert data["distro"] == "Debian GNU/Linux 11 (bullseye)"
        assert data["cpu"] == "ARMv7 Processor rev 2 (v7l)"
        assert data["usb"] == ["Bus 001 Device 001: ID 1d6b:0002 Linux Foundation 2.0 root hub"]
        assert data["network"] == [
            {"iface": "eth0", "addr": "192.168.7.2/24"},
            {"iface": "usb0", "addr": "192.168.6.2/24"},
        ]
        assert "Mem:" in data["memory"]
        assert report.warnings == ()
        assert "**System Identity**" in report.markdown
        assert "- Model: BeagleBone Black" in report.markdown
        assert report.summary == (
            "BeagleBone Black | armv7l | 5.10.168-ti-r71 | RAM 120Mi/483Mi | Uptime up 2 hours, 3 minutes"
        )

    def test_positional_payload(self):
        """Older output printed bare values, with model and arch run together."""
        payload = 'BeagleBone Blackarmv7l\n5.10.168\nPRETTY_NAME="Debian GNU/Linux 11"\nup 1 hour'
        data = get_probe("identity").parse(payload).data
        assert data["model"] == "BeagleBone Black"
        assert data["arch"] == "armv7l"
        assert data["kernel"] == "5.10.168"
        assert data["distro"] == "Debian GNU/Linux 11"
        assert data["uptime"] == "up 1 hour"

    def test_empty_payload_degrades(self):
        report = get_probe("identity").parse("")
        assert report.degraded
        assert report.data == {}
        assert report.summary == "identity: no usable output"
        assert report.warnings[0].startswith("could not parse probe output")

    def test_summary_option_renders_one_line(self):
        report = get_probe("identity").parse(IDENTITY_PAYLOAD, {"summary": "true"})
        assert report.markdown == report.summary


class TestDriversProbe:
    """Tests for the driver binding parser."""

    def test_scan(self):
        report = get_probe("drivers").parse(DRIVERS_PAYLOAD)
        data = report.data
        assert data["total"] == 3
        assert data["unbound"] == 1
        assert data["buses"] == ["pci", "platform", "usb"]
        assert data["taint"] == {"raw": 1, "flags": ["PROPRIETARY"]}

        by_bus = {d["bus"]: d for d in data["devices"]}
        assert by_bus["pci"]["identity"].startswith("Intel Corporation Cannon Lake PCH cAVS")
        assert by_bus["usb"]["identity"] == "Realtek Semiconductor Corp. RTL8188EUS 802.11n"
        assert by_bus["usb"]["candidates"] == ["r8188eu", "rtl8xxxu"]
        assert by_bus["platform"]["builtin"] is True

        assert "1) /sys/bus/usb/devices/1-1  [usb]" in report.markdown
        assert "rtl8188eufw.bin" in report.markdown
        assert report.summary == "3 devices (pci, platform, usb), 1 unbound, taint PROPRIETARY"

    def test_filters(self):
        probe = get_probe("drivers")
        assert probe.parse(DRIVERS_PAYLOAD, {"subsystem": "usb"}).data["total"] == 1
        only = probe.parse(DRIVERS_PAYLOAD, {"only_unbound": "true"}).data
        assert [d["path"] for d in only["devices"]] == ["/sys/bus/usb/devices/1-1"]

    def test_explain_target(self):
        report = get_probe("drivers").parse(DRIVERS_PAYLOAD, {"target": "0BDA:8179"})
        target = report.data["target"]
        assert target["found"] is True
        assert target["action"] == "Try: load `r8188eu` and replug, then recheck logs."
        assert len(target["firmware"]) == 1
        assert "- UNBOUND" in report.markdown
        assert report.summary == "/sys/bus/usb/devices/1-1: unbound"

    def test_missing_target(self):
        report = get_probe("drivers").parse(DRIVERS_PAYLOAD, {"target": "dead:beef"})
        assert report.data["target"]["found"] is False
        assert report.summary == "dead:beef: not found"

    def test_no_sysfs_section_degrades(self):
        report = get_probe("drivers").parse("find: /sys/bus: Permission denied")
        assert report.degraded
        assert "Could not interpret the device output." in report.markdown
        assert "Permission denied" in report.markdown


class TestDeviceTreeProbe:
    """Tests for the device-tree parser."""

    def test_nodes_and_categories(self):
        report = get_probe("device_tree").parse(DEVICE_TREE_PAYLOAD)
        data = report.data
        assert data["count"] == 4
        serial = data["nodes"][1]
        assert serial["node"] == "serial@44e09000"
        assert "am3352-uart" in serial["compatible"]
        assert serial["reg"] == ["0x44e09000", "0x00002000"]
        assert data["nodes"][2]["reg"][0] == "0x44e0b000"
        assert data["categories"]["communication"] == ["serial@44e09000", "i2c@44e0b000"]
        assert data["categories"]["processing"] == ["cpus"]
        assert data["categories"]["storage"] == ["memory@80000000"]
        assert "- **serial@44e09000**" in report.markdown
        assert report.summary.startswith("cpus: ? | serial@44e09000: 0x44e09000...")

    def test_table_and_json_formats(self):
        probe = get_probe("device_tree")
        table = probe.parse(DEVICE_TREE_PAYLOAD, {"format": "table"}).markdown
        assert table.splitlines()[0] == "| Node | Compatible | Addresses |"
        as_json = json.loads(probe.parse(DEVICE_TREE_PAYLOAD, {"format": "json"}).markdown)
        assert as_json[0]["node"] == "cpus"

    def test_deep_option_changes_depth(self):
        probe = get_probe("device_tree")
        assert "-maxdepth 2" in probe.build_script(probe.normalize_options({"deep": "true"}))
        assert "-maxdepth 1" in probe.build_script(probe.normalize_options())

    def test_score_ignores_echoed_script(self):
        probe = get_probe("device_tree")
        assert probe.score(probe.build_script(probe.normalize_options())) == 0
        assert probe.score(DEVICE_TREE_PAYLOAD) == 5

    def test_no_device_tree_degrades(self):
        report = get_probe("device_tree").parse("")
        assert report.degraded


class TestHotspotsProbe:
    """Tests for the hotspot sampler parser."""

    def test_load_split_and_interrupts(self):
        report = get_probe("hotspots").parse(HOTSPOTS_PAYLOAD)
        data = report.data
        assert data["per_cpu_load"] == {"cpu0": 88.2, "cpu1": 26.3}
        assert data["max_cpu"] == {"cpu": "cpu0", "load": 88.2}
        assert data["context_split"] == {"irq": 10.0, "softirq": 10.0, "system": 20.0, "user": 60.0}
        assert data["split_basis"] == "cpu_time"
        assert data["hottest_irq"]["irq"] == "24"
        assert data["hottest_irq"]["delta"] == 600
        assert data["hottest_irq"]["label"].endswith("arch_timer")
        assert data["hottest_softirq"] == {"name": "NET_RX", "delta": 300}
        assert [t["irq"] for t in data["top_irq_deltas"]] == ["24", "56"]
        assert data["top_functions"] == []

        md = report.markdown
        assert "Cores >=80%: CPU0 (1)." in md
        assert "Top path: n/a" in md
        assert "600 hits (~120.0/s)" in md
        assert "over 2 CPUs, peak cpu0 88.2%" in report.summary
        assert report.summary.endswith("hottest IRQ 24 (GICv3  27 Level     arch_timer)")

    def test_perf_section(self):
        data = get_probe("hotspots").parse(HOTSPOTS_PAYLOAD + PERF_SECTION).data
        assert data["top_functions"][0] == {
            "percent": 12.5, "symbol": "default_idle_call", "module": "kernel.kallsyms",
        }
        assert data["top_functions"][1]["module"] == "macb"
        assert data["modules"] == [
            {"module": "kernel.kallsyms", "percent": 12.5},
            {"module": "macb", "percent": 5.0},
        ]

    def test_interrupt_count_fallback(self):
        """With no CPU time moving, the split falls back to interrupt counts."""
        first, second = HOTSPOTS_PAYLOAD.split("---STAT_B---")
        stat_a = first.split("---STAT_A---\n")[1].split("---IRQS_A---")[0]
        flat = first + "---STAT_B---\n" + stat_a + "---IRQS_B---" + second.split("---IRQS_B---")[1]
        data = get_probe("hotspots").parse(flat).data
        assert data["per_cpu_load"] == {}
        assert data["split_basis"] == "interrupt_counts"
        # 1100 interrupt hits vs 500 softirq hits
        assert data["context_split"]["irq"] == 68.8
        assert data["context_split"]["softirq"] == 31.2

    def test_timeout_grows_with_duration(self):
        probe = get_probe("hotspots")
        assert probe.timeout_ms(probe.normalize_options()) == 30_000
        assert probe.timeout_ms(probe.normalize_options({"duration": "30"})) == 45_000

    def test_score_separates_output_from_echo(self):
        probe = get_probe("hotspots")
        script = probe.build_script(probe.normalize_options())
        assert probe.score(script) < probe.min_score
        assert probe.score(HOTSPOTS_PAYLOAD) >= probe.min_score

    def test_missing_snapshot_degrades(self):
        report = get_probe("hotspots").parse(HOTSPOTS_PAYLOAD.split("---STAT_B---")[0])
        assert report.degraded


class TestRealtimeProbe:
    """Tests for the RT readiness parser."""

    def test_rt_kernel(self):
        report = get_probe("realtime").parse(REALTIME_PAYLOAD)
        data = report.data
        assert data["kernel_release"] == "5.10.120-rt70"
        assert data["preempt"]["rt"] is True
        assert data["preempt"]["version_flags"] == ["PREEMPT_RT"]
        assert data["preempt"]["config"]["CONFIG_PREEMPT_RT"] == "y"
        assert data["clocksource"] == "arch_sys_counter"
        assert data["isolated_cpus"] == "2-3"
        assert data["rt_limits"] == {"period_us": 1000000, "runtime_us": 950000, "throttling": True}
        assert data["boot_params"] == ["isolcpus=2,3", "nohz_full=2-3"]
        assert data["cyclictest"] is True

        assert report.markdown.startswith("### Real-Time Analysis Results")
        assert "#### Full Diagnostics" in report.markdown
        assert "throttling enabled" in report.markdown
        assert report.summary == "kernel 5.10.120-rt70 | PREEMPT_RT | clocksource arch_sys_counter | isolated 2-3"

    def test_stock_kernel(self):
        payload = "\n".join([
            "===== RT_ANALYSIS_BEGIN =====",
            "KERNEL_RELEASE: 6.1.0-13-arm64",
            "KERNEL_VERSION: #1 SMP PREEMPT Debian 6.1.55-1",
            "Not RT kernel",
            "RT Period: 1000000",
            "RT Runtime: -1",
            "ISOLATED: ",
            "===== RT_ANALYSIS_END =====",
        ])
        data = get_probe("realtime").parse(payload).data
        assert data["preempt"]["rt"] is False
        assert data["preempt"]["version_flags"] == ["PREEMPT"]
        assert data["rt_limits"]["throttling"] is False
        assert data["isolated_cpus"] == ""
        assert data["cyclictest"] is False

    def test_last_complete_block_wins(self):
        """The echoed script mentions both tags; only the real block is used."""
        probe = get_probe("realtime")
        echoed = probe.build_script({})
        data = probe.parse(echoed + "\n" + REALTIME_PAYLOAD).data
        assert data["kernel_release"] == "5.10.120-rt70"
        assert data["line_count"] == len(REALTIME_PAYLOAD.splitlines())

    def test_incomplete_block_degrades(self):
        report = get_probe("realtime").parse("===== RT_ANALYSIS_BEGIN =====\nKERNEL_RELEASE: 5.10")
        assert report.degraded
        assert "never finished" in report.warnings[0]

    def test_no_block_degrades(self):
        report = get_probe("realtime").parse("sh: 1: cannot open /proc/cmdline")
        assert report.degraded
        assert "no RT analysis block" in report.warnings[0]


class TestReport:
    """Tests for Report rendering."""

    def test_json_hides_raw_unless_debug(self):
        probe = get_probe("identity")
        plain = json.loads(probe.parse("MODEL=Foo\nARCH=arm64\nKERNEL=5.10").to_json())
        assert "raw" not in plain
        debug = json.loads(probe.parse("MODEL=Foo\nARCH=arm64\nKERNEL=5.10", {"debug": "true"}).to_json())
        assert debug["raw"].startswith("MODEL=Foo")

    def test_markdown_lists_warnings_and_debug(self):
        report = get_probe("identity").parse("MODEL=Foo\nARCH=arm64\nKERNEL=5.10", {"debug": "true"})
        md = report.with_meta({"marker": "abc"}).to_markdown()
        assert "**Warnings**" in md
        assert "**Debug Raw Payload**" in md
        assert '"marker": "abc"' in md

    def test_degraded_summary_names_reason(self):
        report = get_probe("identity").parse("")
        assert report.to_summary().startswith("identity: no usable output (degraded: ")


class TestRunProbe:
    """run_probe through sessions on scripted devices."""

    def test_identity_over_echoing_session(self, device_session):
        session = device_session("MODEL=Foo\nARCH=arm64\nKERNEL=5.10")
        report = run_probe("identity", session=session)
        assert report.data["model"] == "Foo"
        assert report.meta["pair_no"] == 2
        assert session.is_open

    def test_identity_over_silent_console(self, device_session):
        """Echo disabled on the board while the transport still advertises it."""
        session = device_session("MODEL=Foo\nARCH=arm64\nKERNEL=5.10", echo=False, declared_echo=True)
        report = run_probe("identity", session=session, timeout_ms=5000)
        assert not report.degraded
        assert report.data["model"] == "Foo"
        assert report.data["arch"] == "arm64"
        assert report.meta["pair_no"] == 1

    def test_scorer_picks_device_output(self, device_session):
        session = device_session(DEVICE_TREE_PAYLOAD)
        report = run_probe("device_tree", session=session)
        assert report.data["count"] == 4
        assert report.meta["score"] == 5

    def test_hotspots_scorer(self, device_session):
        session = device_session(HOTSPOTS_PAYLOAD)
        report = run_probe("hotspots", {"duration": "1"}, session)
        assert not report.degraded
        assert report.data["window_s"] == 1

    def test_ambiguous_output_becomes_degraded_report(self):
        with Session(MockTransport(None, echo=True)) as session:
            report = run_probe("identity", session=session, timeout_ms=300)
        assert report.degraded
        assert report.warnings[0].startswith("could not isolate script output")
        assert report.meta["candidates"] == 1

    def test_timeout_propagates(self):
        with Session(MockTransport(None, echo=False)) as session:
            with pytest.raises(FramedTimeout):
                run_probe("identity", session=session, timeout_ms=200)

    def test_bad_options_fail_before_sending(self):
        transport = MockTransport(None, echo=False)
        with Session(transport) as session:
            with pytest.raises(ValueError):
                run_probe("drivers", {"subsystem": "isa"}, session)
        assert transport.get_sent() == []

    def test_probe_completed_event(self, tmp_path):
        path = tmp_path / "events.jsonl"
        events = EventEmitter(RealFileSystem(), RealClock(), str(path))
        transport = MockTransport(fixed_output("MODEL=Foo\nARCH=x86_64\nKERNEL=6.1"), echo=False)
        with Session(transport, events=events) as session:
            run_probe("identity", session=session)
        types = [json.loads(line)["type"] for line in path.read_text().splitlines()]
        assert "probe_completed" in types

    @pytest.mark.skipif(shutil.which("bash") is None, reason="needs bash")
    def test_runs_locally_without_session(self):
        report = run_probe("identity")
        assert not report.degraded
        assert report.data["arch"] == platform.machine()
