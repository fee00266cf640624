from __future__ import annotations

import argparse
import json
import os
import subprocess
import sys
from pathlib import Path
from typing import Any

from . import __version__

_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from config import get_run_id, get_settings, is_mock_mode, mask_api_key, mask_url


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


def _run(cmd: list[str]) -> int:
    return subprocess.call(cmd, cwd=str(_repo_root()))


def ui(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the FLOW-PRESSURE Streamlit dashboard")
    parser.add_argument("--port", type=int, default=8501)
    parser.add_argument("--address", default="127.0.0.1")
    parser.add_argument("--version", action="version", version=f"flow-pressure {__version__}")
    args = parser.parse_args(argv)
    return _run([
        sys.executable,
        "-m",
        "streamlit",
        "run",
        "app.py",
        "--server.port",
        str(args.port),
        "--server.address",
        args.address,
    ])


def scheduler(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the FLOW-PRESSURE scheduler")
    parser.add_argument("args", nargs=argparse.REMAINDER, help="Arguments passed to scheduler.py")
    parser.add_argument("--version", action="version", version=f"flow-pressure {__version__}")
    ns = parser.parse_args(argv)
    sched_args = ns.args if ns.args else ["once"]
    return _run([sys.executable, "scheduler.py", *sched_args])


def collect_doctor_info() -> dict[str, Any]:
    root = _repo_root()
    in_venv = bool(os.getenv("VIRTUAL_ENV")) or sys.prefix != getattr(sys, "base_prefix", sys.prefix)

    try:
        settings = get_settings()
        finnhub_display = mask_api_key(settings.finnhub_api_key)
        openai_display = mask_api_key(settings.openai_api_key)
        webhook_display = mask_url(settings.discord_webhook_url)
        backend = mask_url(settings.baas_base_url) if settings.baas_base_url else f"local ({settings.data_dir})"
    except Exception:  # noqa: BLE001
        finnhub_display = mask_api_key(os.getenv("FINNHUB_API_KEY"))
        openai_display = mask_api_key(os.getenv("OPENAI_API_KEY"))
        webhook_display = mask_url(os.getenv("DISCORD_WEBHOOK_URL"))
        backend = "unknown (settings failed to load)"

    return {
        "version": __version__,
        "run_id": get_run_id(),
        "python": sys.version.split()[0],
        "executable": sys.executable,
        "repo_root": str(root),
        "in_venv": in_venv,
        "mock_mode": is_mock_mode(),
        "entity_backend": backend,
        "finnhub_api_key": finnhub_display,
        "openai_api_key": openai_display,
        "discord_webhook": webhook_display,
    }


def _render_doctor(info: dict[str, Any]) -> list[str]:
    return [
        f"flow-pressure {info['version']}",
        f"RUN_ID: {info['run_id']}",
        f"Python: {info['python']}",
        f"Executable: {info['executable']}",
        f"Repo root: {info['repo_root']}",
        f"Virtual env active: {'yes' if info['in_venv'] else 'no'}",
        f"MOCK_API_CALLS: {'on' if info['mock_mode'] else 'off'}",
        f"Entity backend: {info['entity_backend']}",
        f"FINNHUB_API_KEY: {info['finnhub_api_key']}",
        f"OPENAI_API_KEY: {info['openai_api_key']}",
        f"DISCORD_WEBHOOK_URL: {info['discord_webhook']}",
    ]


def doctor() -> int:
    try:
        for line in _render_doctor(collect_doctor_info()):
            print(line)
        return 0
    except Exception as exc:  # noqa: BLE001
        print(f"doctor failed: {exc}", file=sys.stderr)
        return 1


def invoke(name: str, payload_json: str | None) -> int:
    from functions import UnknownFunctionError, available_functions
    from functions import invoke as invoke_function

    try:
        payload = json.loads(payload_json) if payload_json else {}
    except json.JSONDecodeError as exc:
        print(f"invalid payload JSON: {exc}", file=sys.stderr)
        return 2

    try:
        result = invoke_function(name, payload)
    except UnknownFunctionError:
        print(f"unknown function: {name}", file=sys.stderr)
        print("available: " + ", ".join(available_functions()), file=sys.stderr)
        return 2

    print(json.dumps(result, indent=2, ensure_ascii=False, default=str))
    return 0 if result.get("success", True) else 1


def main_ui() -> int:
    return ui()


def main_scheduler() -> int:
    return scheduler()


def main_doctor() -> int:
    return doctor()


def main_invoke(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Invoke a FLOW-PRESSURE backend function by name")
    parser.add_argument("name")
    parser.add_argument("payload", nargs="?", help="JSON payload")
    args = parser.parse_args(argv)
    return invoke(args.name, args.payload)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="FLOW-PRESSURE command launcher")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("doctor", help="Run environment diagnostics")
    sub.add_parser("version", help="Print version")
    sub.add_parser("functions", help="List registered backend functions")
    ui_parser = sub.add_parser("ui", help="Run the Streamlit dashboard")
    ui_parser.add_argument("rest", nargs=argparse.REMAINDER)
    sched_parser = sub.add_parser("scheduler", help="Run the polling scheduler")
    sched_parser.add_argument("rest", nargs=argparse.REMAINDER)
    invoke_parser = sub.add_parser("invoke", help="Invoke a backend function by name")
    invoke_parser.add_argument("name")
    invoke_parser.add_argument("payload", nargs="?", help="JSON payload")
    args = parser.parse_args(argv)

    if args.command == "doctor":
        return doctor()
    if args.command == "functions":
        from functions import available_functions

        print("\n".join(available_functions()))
        return 0
    if args.command == "ui":
        return ui(args.rest)
    if args.command == "scheduler":
        return scheduler(args.rest)
    if args.command == "invoke":
        return invoke(args.name, args.payload)
    print(__version__)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
