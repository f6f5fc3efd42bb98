import argparse
import json
import sys
from typing import List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _user_headers(user_id: str) -> dict:
    return {"X-User-Id": user_id}


def _print_error(what: str, resp: httpx.Response) -> None:
    detail = ""
    try:
        detail = resp.json().get("detail") or ""
    except ValueError:
        detail = resp.text
    suffix = f": {detail}" if detail else ""
    print(f"Failed to {what}: HTTP {resp.status_code}{suffix}")


def _print_plans(plans: List[dict]) -> None:
    if not plans:
        print("No plans assigned.")
        return
    for item in plans:
        plan = item.get("plan") or {}
        title = plan.get("title") or "(missing plan)"
        print(
            f"{item.get('plan_id')}  {item.get('progress', 0):>3}%  "
            f"{item.get('completed_steps', 0)}/{item.get('total_steps', 0)}  {title}"
        )


def _print_activities(events: List[dict]) -> None:
    if not events:
        print("No activity.")
        return
    for event in events:
        details = json.dumps(event.get("details") or {}, ensure_ascii=True, sort_keys=True)
        print(f"{event.get('timestamp')}  {event.get('action'):<20} {details}")


def run_plans_list(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, "/api/me/plans"), headers=_user_headers(args.user), timeout=10)
        if resp.status_code >= 400:
            _print_error("list plans", resp)
            return 1
        _print_plans(resp.json().get("plans") or [])
    return 0


def run_activity_list(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    params = {}
    if args.action:
        params["action"] = args.action
    if args.limit:
        params["limit"] = args.limit
    with httpx.Client() as client:
        resp = client.get(
            _join_url(base, "/api/me/activity"),
            headers=_user_headers(args.user),
            params=params,
            timeout=10,
        )
        if resp.status_code >= 400:
            _print_error("list activity", resp)
            return 1
        _print_activities(resp.json().get("activities") or [])
    return 0


def run_activity_prune(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload = {"days": args.days} if args.days else {}
    with httpx.Client() as client:
        resp = client.post(_join_url(base, "/api/admin/activity/prune"), json=payload, timeout=60)
        if resp.status_code >= 400:
            _print_error("prune activity", resp)
            return 1
        print(f"Removed {resp.json().get('removed', 0)} activity events.")
    return 0


def run_repair(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload = {"user_id": args.user} if args.user else {}
    with httpx.Client() as client:
        resp = client.post(_join_url(base, "/api/admin/repair"), json=payload, timeout=args.timeout)
        if resp.status_code >= 400:
            _print_error("run repair", resp)
            return 1
        report = resp.json().get("report") or {}
    print(
        f"Checked {report.get('checked', 0)}, repaired {report.get('repaired', 0)}, "
        f"orphaned {report.get('orphaned', 0)}, failed {report.get('failed', 0)}."
    )
    for key in report.get("repaired_keys") or []:
        print(f"- {key.get('user_id')} {key.get('plan_id')}")
    return 1 if report.get("failed") else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="SkillForge CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    plans = subparsers.add_parser("plans", help="Assigned plans")
    plans_sub = plans.add_subparsers(dest="plans_cmd")
    plans_list = plans_sub.add_parser("list", help="List a user's plans with progress")
    plans_list.add_argument("--user", required=True, help="User id")

    activity = subparsers.add_parser("activity", help="Activity log")
    activity_sub = activity.add_subparsers(dest="activity_cmd")
    activity_list = activity_sub.add_parser("list", help="Show a user's recent activity")
    activity_list.add_argument("--user", required=True, help="User id")
    activity_list.add_argument("--action", default=None, help="Filter by action, e.g. PROGRESS_UPDATE")
    activity_list.add_argument("--limit", type=int, default=None, help="Max events")
    prune = activity_sub.add_parser("prune", help="Delete events older than the retention window")
    prune.add_argument("--days", type=int, default=None, help="Override the configured window")

    repair = subparsers.add_parser("repair", help="Recompute stale progress summaries")
    repair.add_argument("--user", default=None, help="Limit to one user")
    repair.add_argument("--timeout", type=int, default=300, help="Request timeout seconds")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "plans" and args.plans_cmd == "list":
        return run_plans_list(args)
    if args.command == "activity" and args.activity_cmd == "list":
        return run_activity_list(args)
    if args.command == "activity" and args.activity_cmd == "prune":
        return run_activity_prune(args)
    if args.command == "repair":
        return run_repair(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
