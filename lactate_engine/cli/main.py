"""Terminal entrypoint for running an interval lactate test."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from lactate_engine.ble.ftms_client import FTMSTrainer
from lactate_engine.ble.sensor_adapter import GattSensorAdapter, scan_devices
from lactate_engine.core.config import EngineConfig
from lactate_engine.core.engine import TestEngine
from lactate_engine.core.errors import InvalidLactateValue, ProtocolValidationError
from lactate_engine.core.trainer import TrainerController
from lactate_engine.protocol.manager import create_protocol
from lactate_engine.protocol.model import Protocol, ProtocolParams, Step
from lactate_engine.protocol.parser import load_protocol
from lactate_engine.session.export import export_lactate_csv, export_samples_csv
from lactate_engine.session.store import TestSession, append_session
from lactate_engine.telemetry.hub import TelemetryHub
from lactate_engine.telemetry.simulated import SIMULATED_RANGES, SimulatedSensor, SimulatedTrainer

COMMANDS_HELP = (
    "Commands: pause | resume | skip | next | lactate <mmol/L> [borg] [watts] | "
    "power <step> <watts> | stop | quit"
)


def build_parser() -> argparse.ArgumentParser:
    defaults = ProtocolParams()
    parser = argparse.ArgumentParser(description="Interval lactate test engine")
    parser.add_argument("--scan", action="store_true", help="Scan BLE devices")
    parser.add_argument(
        "--simulate",
        action="store_true",
        help="Use simulated trainer and sensors (no BLE required)",
    )
    parser.add_argument(
        "--trainer",
        nargs="?",
        const="auto",
        default=None,
        help="Connect an FTMS trainer (first found, or the given BLE address/name)",
    )
    parser.add_argument("--hr", nargs="?", const="auto", default=None, help="Heart rate strap")
    parser.add_argument("--power", nargs="?", const="auto", default=None, help="Power meter")
    parser.add_argument(
        "--thermo", nargs="?", const="auto", default=None, help="Core temperature sensor"
    )
    parser.add_argument(
        "--csc", nargs="?", const="auto", default=None, help="Speed/cadence sensor (CSC)"
    )
    parser.add_argument("--protocol", type=Path, default=None, help="Protocol .json or .csv")
    parser.add_argument("--work", type=int, default=defaults.work_duration_sec, help="Work seconds")
    parser.add_argument(
        "--recovery", type=int, default=defaults.recovery_duration_sec, help="Recovery seconds"
    )
    parser.add_argument(
        "--start-power", type=int, default=defaults.start_power_watts, help="First step watts"
    )
    parser.add_argument(
        "--increment",
        type=int,
        default=defaults.power_increment_watts,
        help="Watts added per step",
    )
    parser.add_argument("--steps", type=int, default=defaults.max_steps, help="Number of steps")
    parser.add_argument(
        "--grace-delay",
        type=float,
        default=EngineConfig().erg_grace_delay_sec,
        help="Seconds before the first ERG command after start",
    )
    parser.add_argument(
        "--sessions-file", type=Path, default=None, help="JSONL file for completed sessions"
    )
    parser.add_argument(
        "--export-dir", type=Path, default=None, help="Directory for CSV exports"
    )
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    return parser


def configure_logging(debug: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if debug else "INFO")


def build_protocol(args: argparse.Namespace) -> Protocol:
    if args.protocol is not None:
        return load_protocol(args.protocol)
    return create_protocol(
        ProtocolParams(
            work_duration_sec=args.work,
            recovery_duration_sec=args.recovery,
            start_power_watts=args.start_power,
            power_increment_watts=args.increment,
            max_steps=args.steps,
        )
    )


def build_devices(
    args: argparse.Namespace, hub: TelemetryHub
) -> Optional[TrainerController]:
    if args.simulate:
        sim_trainer = SimulatedTrainer()
        hub.register_adapter(sim_trainer.device_type, sim_trainer)
        for device_type in sorted(SIMULATED_RANGES):
            hub.register_adapter(device_type, SimulatedSensor(device_type))
        return sim_trainer

    trainer: Optional[FTMSTrainer] = None
    if args.trainer is not None:
        trainer = FTMSTrainer(target=args.trainer)
        hub.register_adapter(trainer.device_type, trainer)
    for device_type, target in (
        ("heart_rate", args.hr),
        ("power_meter", args.power),
        ("core_temp", args.thermo),
        ("speed_cadence", args.csc),
    ):
        if target is not None:
            hub.register_adapter(device_type, GattSensorAdapter(device_type, target=target))
    return trainer


def handle_command(engine: TestEngine, line: str) -> str:
    """Apply one operator command; returns the acknowledgement to print."""
    parts = line.strip().split()
    if not parts:
        return ""
    command, args = parts[0].lower(), parts[1:]

    if command == "pause":
        return "Paused" if engine.pause() else "Nothing to pause"
    if command == "resume":
        return "Resumed" if engine.resume() else "Nothing to resume"
    if command == "skip":
        return "Interval ended" if engine.skip_interval() else "Not in a work interval"
    if command == "next":
        return "Countdown started" if engine.start_interval() else "Not in recovery"
    if command in ("stop", "quit"):
        return "Stopped" if engine.stop() else "Test not running"
    if command == "lactate":
        if not args:
            return "Usage: lactate <mmol/L> [borg] [watts]"
        try:
            entry = engine.add_lactate(
                _to_float(args[0]),
                borg=_to_float(args[1]) if len(args) > 1 else None,
                manual_power=_to_float(args[2]) if len(args) > 2 else None,
            )
        except InvalidLactateValue as exc:
            return f"Rejected: {exc}"
        return f"Step {entry.step}: {entry.lactate} mmol/L at {entry.power} W"
    if command == "power":
        if len(args) != 2:
            return "Usage: power <step> <watts>"
        try:
            index, watts = int(args[0]) - 1, int(args[1])
        except ValueError:
            return "Usage: power <step> <watts>"
        steps = list(engine.protocol.steps)
        if not 0 <= index < len(steps):
            return f"No step {args[0]}"
        old = steps[index]
        steps[index] = Step(
            step_number=old.step_number,
            target_power_watts=watts,
            duration_sec=old.duration_sec,
            recovery_duration_sec=old.recovery_duration_sec,
        )
        try:
            updated = engine.edit_protocol(steps)
        except ProtocolValidationError as exc:
            return f"Rejected: {exc}"
        if updated.steps[index].target_power_watts != watts:
            return f"Step {index + 1} already executed"
        return f"Step {index + 1} set to {watts} W"
    return COMMANDS_HELP


def _to_float(raw: str) -> float:
    try:
        return float(raw.replace(",", "."))
    except ValueError as exc:
        raise InvalidLactateValue(f"not a number: {raw!r}") from exc


def format_status(engine: TestEngine, hub: TelemetryHub) -> str:
    state = engine.state
    live = hub.display_snapshot()
    phase = state.phase or state.resume_phase or "-"
    step = engine.current_step
    label = f"{state.mode}/{phase}"
    if state.phase == "countdown":
        label += f" {state.countdown_value}"
    return (
        f"[{_fmt_duration(engine.total_elapsed_sec)}] {label:<18} "
        f"step {step.step_number}/{len(engine.protocol.steps)} "
        f"target {step.target_power_watts} W | "
        f"power {_fmt(live.power, 'W', 0)} | cadence {_fmt(live.cadence, 'rpm', 0)} | "
        f"HR {_fmt(live.heart_rate, 'bpm', 0)} | SmO2 {_fmt(live.smo2, '%', 1)}"
    )


def _fmt(value: float | None, unit: str, digits: int) -> str:
    return f"{value:.{digits}f} {unit}" if value is not None else f"-- {unit}"


def _fmt_duration(total_seconds: int) -> str:
    minutes, seconds = divmod(max(0, total_seconds), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours:d}:{minutes:02d}:{seconds:02d}"
    return f"{minutes:02d}:{seconds:02d}"


def make_session_sink(sessions_file: Path | None, export_dir: Path | None):
    def _save(session: TestSession) -> None:
        append_session(session, path=sessions_file)
        samples_csv = export_samples_csv(session, out_dir=export_dir)
        lactate_csv = export_lactate_csv(session, out_dir=export_dir)
        print(f"Exported {samples_csv} and {lactate_csv}")

    return _save


async def run_scan() -> int:
    devices = await scan_devices(timeout=5.0)
    if not devices:
        print("No BLE devices found")
        return 0
    for device in devices:
        services = ",".join(device.services) or "-"
        print(f"{device.name:<24} {device.address} RSSI={device.rssi:>4} [{services}]")
    return 0


async def run_test(args: argparse.Namespace) -> int:
    try:
        protocol = build_protocol(args)
    except ProtocolValidationError as exc:
        print(f"Invalid protocol: {exc}")
        return 1

    config = EngineConfig(erg_grace_delay_sec=max(0.0, args.grace_delay))
    hub = TelemetryHub(
        heart_rate_smoothing=config.heart_rate_smoothing,
        record_smoothed_heart_rate=config.record_smoothed_heart_rate,
        on_device_lost=lambda device, reason: print(
            f"Warning: {device} disconnected ({reason or 'unknown'})"
        ),
    )
    trainer = build_devices(args, hub)
    for failure in await hub.connect_all():
        print(f"Warning: {failure}")

    done = asyncio.Event()
    engine = TestEngine(
        protocol,
        hub,
        trainer=trainer,
        config=config,
        on_notify=lambda message, level: print(f"[{level}] {message}"),
        on_lactate_prompt=lambda step: print(
            f"Enter lactate for step {step.step_number}: lactate <mmol/L> [borg] [watts]"
        ),
        on_complete=make_session_sink(args.sessions_file, args.export_dir),
    )
    if trainer is not None and trainer.status == "ready":
        await engine.take_control()

    print(COMMANDS_HELP)
    engine.start()
    loop = asyncio.get_running_loop()

    async def _print_status() -> None:
        while not done.is_set():
            print(format_status(engine, hub))
            await asyncio.sleep(1.0)

    status_task = asyncio.create_task(_print_status())
    try:
        while engine.state.in_progress:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                engine.stop()
                break
            reply = handle_command(engine, line)
            if reply:
                print(reply)
    except (KeyboardInterrupt, asyncio.CancelledError):
        engine.stop()
    finally:
        done.set()
        status_task.cancel()
        for failure in await hub.disconnect_all():
            print(f"Warning: {failure}")
    return 0


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    configure_logging(args.debug)

    if args.scan:
        return asyncio.run(run_scan())

    if not args.simulate and not any((args.trainer, args.hr, args.power, args.thermo, args.csc)):
        parser.print_help()
        return 1

    return asyncio.run(run_test(args))


if __name__ == "__main__":
    raise SystemExit(main())
