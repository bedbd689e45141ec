import argparse
import json
import os
import sys
from typing import Any, Dict, List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"
RUN_COMMANDS = {
    "approve": "approve_run",
    "next": "run_next_step",
    "pause": "pause_run",
    "resume": "resume_run",
    "stop": "stop_run",
    "status": "get_run",
}


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _headers(args: argparse.Namespace) -> Dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if args.api_key:
        headers["X-AI-Admin-Api-Key"] = args.api_key
    return headers


def _load_plan_file(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        raise ValueError("Plan file must contain a JSON object.")
    return data


def _print_run(run: Optional[Dict[str, Any]]) -> None:
    if not run:
        return
    total = len(run.get("actions") or [])
    print(f"Run {run.get('runId')}: {run.get('status')} ({run.get('nextActionIndex', 0)}/{total} steps)")
    for step in run.get("steps") or []:
        marker = " (stalled)" if step.get("stalled") else ""
        line = f"  [{step.get('index')}] {step.get('actionType')} {step.get('actionId')}: {step.get('status')}{marker}"
        if step.get("error"):
            line += f" - {step['error']}"
        print(line)


def _post(args: argparse.Namespace, path: str, payload: Dict[str, Any]) -> int:
    base = args.base_url or DEFAULT_API_BASE
    if args.caller_email and "callerEmail" not in payload:
        payload = {**payload, "callerEmail": args.caller_email}
    with httpx.Client() as client:
        try:
            resp = client.post(_join_url(base, path), json=payload, headers=_headers(args), timeout=args.timeout)
        except httpx.RequestError as exc:
            print(f"Request failed: {exc}")
            return 1
    try:
        data = resp.json()
    except ValueError:
        print(f"HTTP {resp.status_code}: {resp.text}")
        return 1
    if args.json:
        print(json.dumps(data, indent=2))
    else:
        mode = data.get("mode") or "-"
        print(f"HTTP {resp.status_code} mode={mode} ok={data.get('ok')}")
        if data.get("error"):
            print(f"Error: {data['error']}" + (f" ({data['reason']})" if data.get("reason") else ""))
        for issue in data.get("details") or []:
            if isinstance(issue, dict):
                print(f"- {issue.get('code')} at {issue.get('path')}: {issue.get('message')}")
        for conflict in data.get("conflicts") or []:
            print(f"- conflict {conflict.get('reason')} on {conflict.get('actionId')}: {conflict.get('detail')}")
        _print_run(data.get("run"))
    return 0 if resp.status_code < 400 else 1


def run_plan(args: argparse.Namespace) -> int:
    payload: Dict[str, Any] = {"prompt": args.prompt}
    if args.dataset:
        payload["dataset"] = args.dataset
    if args.year:
        payload["year"] = args.year
    return _post(args, "/plan", payload)


def run_plan_file(args: argparse.Namespace) -> int:
    try:
        payload = _load_plan_file(args.plan_file)
    except (OSError, ValueError) as exc:
        print(f"Failed to read plan: {exc}")
        return 1
    if args.command == "validate":
        payload["validateOnly"] = True
    elif args.command == "dry-run":
        payload["dryRun"] = True
    elif args.command == "create-run":
        payload["command"] = "create_run"
    return _post(args, "/execute", payload)


def run_command(args: argparse.Namespace) -> int:
    payload: Dict[str, Any] = {"command": RUN_COMMANDS[args.command], "runId": args.run_id}
    if getattr(args, "reason", None):
        payload["reason"] = args.reason
    return _post(args, "/execute", payload)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="AI admin run orchestrator CLI")
    parser.add_argument("--base-url", default=os.getenv("AI_ADMIN_BASE_URL", DEFAULT_API_BASE), help="API base URL")
    parser.add_argument("--api-key", default=os.getenv("AI_ADMIN_API_KEY"), help="API key header value")
    parser.add_argument("--caller-email", default=os.getenv("ADMIN_EMAIL"), help="callerEmail sent with requests")
    parser.add_argument("--timeout", type=float, default=120, help="Request timeout seconds")
    parser.add_argument("--json", action="store_true", help="Print the raw JSON response")
    subparsers = parser.add_subparsers(dest="command")

    plan = subparsers.add_parser("plan", help="Draft a plan from a prompt")
    plan.add_argument("prompt", help="Natural-language request")
    plan.add_argument("--dataset", help="Census dataset, e.g. acs/acs5")
    plan.add_argument("--year", type=int, help="Census vintage year")

    for name, help_text in (
        ("validate", "Validate a plan file"),
        ("dry-run", "Dry-run a plan file"),
        ("create-run", "Create a run from a plan file"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("plan_file", help="Path to an execute body JSON file")

    for name in ("approve", "next", "status", "resume"):
        sub = subparsers.add_parser(name, help=f"{RUN_COMMANDS[name]} for a run")
        sub.add_argument("run_id")
    for name in ("pause", "stop"):
        sub = subparsers.add_parser(name, help=f"{RUN_COMMANDS[name]} for a run")
        sub.add_argument("run_id")
        sub.add_argument("--reason", help="Reason recorded on the run")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "plan":
        return run_plan(args)
    if args.command in ("validate", "dry-run", "create-run"):
        return run_plan_file(args)
    if args.command in RUN_COMMANDS:
        return run_command(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
