"""MeterLab CLI - calibration workbench for AI meter reading."""

import argparse
import asyncio
import base64
import json
import logging
import subprocess
import sys
from pathlib import Path

# Ensure project root is on sys.path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from core.config import DEFAULT_CONFIG_NAME, load_settings  # noqa: E402
from core.errors import MeterLabError, RunFailedError  # noqa: E402

CONFIG_TEMPLATE = """# MeterLab configuration
database:
  path: meterlab.duckdb

storage:
  photos_dir: photos

gateway:
  provider: claude        # claude | ollama

providers:
  claude:
    model: claude-sonnet-4-20250514
    api_key_env: ANTHROPIC_API_KEY
    timeout: 60
    input_cost_per_mtok: 3.0
    output_cost_per_mtok: 15.0
  ollama:
    model: llava
    base_url: http://localhost:11434
    timeout: 120

calibration:
  min_photos: 5
  acceptance_rate: 0.7
  review_quorum: 1.0
  min_tests_for_suggestion: 3
  max_corrections: 5
  max_parallel_photos: 4
  reconciliation: highest_confidence   # highest_confidence | agreement

polling:
  max_iterations: 120
  interval_seconds: 2.0
"""


def configure_logging(verbose: bool = False):
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )


def _service(args):
    from calibration.service import CalibrationService

    return CalibrationService(load_settings(args.config))


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


# ── Commands ──────────────────────────────────────────────────────────

def cmd_init(args):
    """Initialize a MeterLab project in the current directory."""
    cwd = Path.cwd()
    config_path = cwd / DEFAULT_CONFIG_NAME
    if not config_path.exists():
        config_path.write_text(CONFIG_TEMPLATE, encoding="utf-8")
        print(f"  [ok] {DEFAULT_CONFIG_NAME} created")
    else:
        print(f"  [ok] {DEFAULT_CONFIG_NAME} already exists")

    (cwd / "photos").mkdir(exist_ok=True)
    print("  [ok] photos/")

    env_path = cwd / ".env"
    if not env_path.exists():
        env_path.write_text("ANTHROPIC_API_KEY=\n", encoding="utf-8")
        print("  [ok] .env created (add your API key)")
    else:
        print("  [ok] .env already exists")

    print("\nProject initialized. Next steps:")
    print("  1. Add ANTHROPIC_API_KEY to .env (or switch gateway.provider to ollama)")
    print("  2. Run: meterlab folders create 'My meter' --type gas")


def cmd_folders(args):
    """List, create, show or delete experiment folders."""
    service = _service(args)
    try:
        if args.action == "create":
            folder = service.create_folder({"name": args.name, "detected_type": args.type})
            print(f"Created folder {folder['name']} ({folder['id']})")
        elif args.action == "show":
            _print_json(service.get_folder(args.folder_id))
        elif args.action == "delete":
            deleted = service.delete_folder(args.folder_id)
            print(f"Deleted folder with {deleted['photos']} photos and {deleted['runs']} test runs")
        else:
            listing = service.list_folders(status=args.status)
            folders = listing["folders"]
            if not folders:
                print("No folders yet. Run `meterlab folders create NAME`.")
                return
            print(f"\n{'Name':<30} {'Type':<12} {'Status':<10} {'Photos':>6} {'New':>4}  Id")
            print("-" * 100)
            for f in folders:
                flag = "!" if f["has_new_photos"] else ""
                print(f"{f['name']:<30} {f['detected_type']:<12} {f['status']:<10} "
                      f"{f['photo_count']:>6} {f['photos_since_last_test']:>3}{flag:<1}  {f['id']}")
            print(f"\nUnclassified photos: {listing['unclassified_count']}")
    finally:
        service.close()


def cmd_upload(args):
    """Upload image files into a folder, or auto-classify them."""
    items = []
    for path in args.files:
        data = Path(path).read_bytes()
        items.append({"image": base64.b64encode(data).decode("ascii"), "filename": Path(path).name})

    service = _service(args)
    try:
        result = asyncio.run(_released(service, service.upload_photos(items, folder_id=args.folder)))
    finally:
        service.close()

    print(f"Uploaded {result['success_count']}/{result['total']} photos")
    for error in result["errors"]:
        print(f"  [skip] {error['filename']}: {error['error']}")


async def _released(service, coro):
    """Await a service coroutine and release the provider in the same event loop."""
    try:
        return await coro
    finally:
        await service.aclose()


def _summarize_run(run) -> None:
    print(f"\nRun {run['id']}: {run['status']}")
    if run.get("error"):
        print(f"  error: {run['error']}")
    print(f"  processed: {run.get('processed_count', 0)}/{run.get('total_photos', 0)}"
          f"  errors: {run.get('error_count', 0)}")
    if run.get("avg_confidence") is not None:
        print(f"  avg confidence: {run['avg_confidence']:.2f}")
    if run.get("total_cost_usd"):
        print(f"  cost: ${run['total_cost_usd']:.4f}")


async def _run_remote(args, settings):
    import httpx
    from calibration.orchestrator import wait_for_run

    async with httpx.AsyncClient(base_url=args.server, timeout=30) as client:
        response = await client.post("/api/v1/tests", json={
            "folder_id": args.folder_id,
            "multi_pass": args.multi_pass,
            "pass_count": args.passes,
            "run_immediately": True,
        })
        body = response.json()
        if not body.get("success"):
            raise RunFailedError(body.get("error", f"HTTP {response.status_code}"))
        run_id = body["test"]["id"]
        print(f"Started run {run_id}; polling every {settings.polling.interval_seconds}s")

        async def fetch():
            poll = await client.get(f"/api/v1/tests/{run_id}")
            poll.raise_for_status()
            return poll.json()["test"]

        return await wait_for_run(
            fetch,
            max_iterations=settings.polling.max_iterations,
            interval_seconds=settings.polling.interval_seconds,
        )


def cmd_test(args):
    """Run a test over a folder's photos, locally or through a running server."""
    settings = load_settings(args.config)

    if args.server:
        run = asyncio.run(_run_remote(args, settings))
    else:
        from calibration.service import CalibrationService

        service = CalibrationService(settings)
        try:
            queued = service.start_test(args.folder_id, multi_pass=args.multi_pass, pass_count=args.passes)
            print(f"Started run {queued['id']}")
            run = asyncio.run(_released(service, service.execute_test(queued["id"])))
        finally:
            service.close()

    _summarize_run(run)
    if run["status"] != "completed":
        raise RunFailedError(f"Run {run['id']} ended as {run['status']}")


def cmd_verdict(args):
    """Record an operator verdict on one test result."""
    verdict = None if args.reset else args.verdict == "ok"
    service = _service(args)
    try:
        outcome = service.record_verdict(args.result_id, verdict, corrected_reading=args.correct)
    finally:
        service.close()
    run = outcome["test"]
    print(f"Result {args.result_id}: verdict={verdict}")
    print(f"  run {run['id']}: {run['pending_count']} pending, accuracy "
          f"{(run['accuracy_rate'] or 0):.0%}; folder is {outcome['folder_status']}")


def cmd_promote(args):
    """Promote a validated folder to a production meter model."""
    service = _service(args)
    try:
        if args.check:
            _print_json(service.promotion_eligibility(args.folder_id))
            return
        result = service.promote(args.folder_id)
    finally:
        service.close()
    model = result["meter_model"]
    print(f"Meter model {model['name']} {result['action']} ({model['id']})")
    for version in result["activated_versions"]:
        print(f"  active {version['kind']} version: v{version['version_number']}")


def cmd_versions(args):
    """List a meter model's versions with their review statistics."""
    service = _service(args)
    try:
        listing = service.list_versions(args.model_id, args.kind)
    finally:
        service.close()

    print(f"\n{'Kind':<14} {'Ver':>4} {'Active':>7} {'Tests':>6} {'Success':>8} {'Conf':>6}")
    print("-" * 52)
    for v in listing["versions"]:
        stats = v["stats"] or {}
        print(f"{v['kind']:<14} {v['version_number']:>4} {'yes' if v['is_active'] else '':>7} "
              f"{stats.get('total_tests', 0):>6} {stats.get('success_rate', 0):>7.0%} "
              f"{stats.get('avg_confidence', 0):>6.2f}")


def cmd_suggest(args):
    """Suggest which prompt version should be active for a meter model."""
    service = _service(args)
    try:
        suggestion = service.suggest_version(args.model_id)
    finally:
        service.close()
    best = suggestion["best_version"]
    if best:
        print(f"Suggest v{best['version_number']} ({best['version_id']}): {suggestion['rationale']}")
    else:
        print(f"No change suggested: {suggestion['rationale']}")


def cmd_serve(args):
    """Launch the API server."""
    print(f"Starting MeterLab API on http://{args.host}:{args.port}")
    command = [
        sys.executable, "-m", "uvicorn",
        "dashboard.app:app",
        "--app-dir", str(PROJECT_ROOT),
        "--host", args.host,
        "--port", str(args.port),
    ]
    if args.reload:
        command.append("--reload")
    subprocess.run(command)


# ── Argument parser ───────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="meterlab",
        description="MeterLab - meter reading calibration CLI",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--config", "-c", default=None, help=f"Path to {DEFAULT_CONFIG_NAME}")
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # init
    sub.add_parser("init", help="Initialize a MeterLab project in the current directory")

    # folders
    p_folders = sub.add_parser("folders", help="Manage experiment folders")
    folder_actions = p_folders.add_subparsers(dest="action")
    p_list = folder_actions.add_parser("list", help="List folders")
    p_list.add_argument("--status", help="Filter by lifecycle status")
    p_create = folder_actions.add_parser("create", help="Create a folder")
    p_create.add_argument("name", help="Folder name")
    p_create.add_argument("--type", "-t", default="unknown", choices=["gas", "water", "electricity", "unknown"])
    p_show = folder_actions.add_parser("show", help="Show a folder with its photos")
    p_show.add_argument("folder_id")
    p_delete = folder_actions.add_parser("delete", help="Delete a folder, its photos and tests")
    p_delete.add_argument("folder_id")
    p_folders.set_defaults(status=None)

    # upload
    p_upload = sub.add_parser("upload", help="Upload photos")
    p_upload.add_argument("files", nargs="+", help="Image files")
    p_upload.add_argument("--folder", "-f", help="Target folder id (omit to auto-classify)")

    # test
    p_test = sub.add_parser("test", help="Run a test over a folder")
    p_test.add_argument("folder_id")
    p_test.add_argument("--multi-pass", action="store_true", help="Run strict verification passes")
    p_test.add_argument("--passes", type=int, default=2, choices=[2, 3], help="Passes per photo with --multi-pass")
    p_test.add_argument("--server", help="Start the run on a MeterLab server and poll it (e.g. http://127.0.0.1:8000)")

    # verdict
    p_verdict = sub.add_parser("verdict", help="Record a verdict on a test result")
    p_verdict.add_argument("result_id")
    p_verdict.add_argument("verdict", nargs="?", choices=["ok", "wrong"], default="ok")
    p_verdict.add_argument("--correct", help="Corrected reading")
    p_verdict.add_argument("--reset", action="store_true", help="Set the verdict back to pending")

    # promote
    p_promote = sub.add_parser("promote", help="Promote a validated folder")
    p_promote.add_argument("folder_id")
    p_promote.add_argument("--check", action="store_true", help="Only report promotion eligibility")

    # versions
    p_versions = sub.add_parser("versions", help="List a meter model's versions")
    p_versions.add_argument("model_id")
    p_versions.add_argument("--kind", choices=["prompt", "preprocessing"])

    # suggest
    p_suggest = sub.add_parser("suggest", help="Suggest the best version for a meter model")
    p_suggest.add_argument("model_id")

    # serve
    p_serve = sub.add_parser("serve", help="Launch the API server")
    p_serve.add_argument("--port", type=int, default=8000, help="Port number")
    p_serve.add_argument("--host", default="127.0.0.1", help="Host address")
    p_serve.add_argument("--reload", action="store_true", help="Enable auto-reload")

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()
    configure_logging(args.verbose)

    commands = {
        "init": cmd_init,
        "folders": cmd_folders,
        "upload": cmd_upload,
        "test": cmd_test,
        "verdict": cmd_verdict,
        "promote": cmd_promote,
        "versions": cmd_versions,
        "suggest": cmd_suggest,
        "serve": cmd_serve,
    }

    if not args.command:
        parser.print_help()
        sys.exit(0)

    handler = commands.get(args.command)
    try:
        handler(args)
    except MeterLabError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(exc.exit_code)


if __name__ == "__main__":
    main()
