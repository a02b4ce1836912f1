import argparse
import json
import sys
from typing import List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _error(resp: httpx.Response, action: str) -> int:
    try:
        detail = resp.json().get("detail")
    except ValueError:
        detail = resp.text
    print(f"Failed to {action}: HTTP {resp.status_code} {detail or ''}".rstrip())
    return 1


def _print_personas(entries: list) -> None:
    if not entries:
        print("No personas.")
        return
    for entry in entries:
        persona = entry.get("persona") or {}
        score = entry.get("score") or {}
        print(
            f"{persona.get('id')}: {persona.get('name')} "
            f"(used {score.get('usage_count', 0)}x, rating {score.get('average_rating', 0.0):.2f} "
            f"over {score.get('feedback_count', 0)})"
        )


def run_agent(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload = {"input": args.message, "thread_id": args.thread, "stream": args.stream}
    with httpx.Client() as client:
        url = _join_url(base, f"/api/agents/{args.agent_id}/run")
        if not args.stream:
            resp = client.post(url, json=payload, timeout=args.timeout)
            if resp.status_code >= 400:
                return _error(resp, "run agent")
            data = resp.json()
            print(data.get("output", ""))
            print(f"[thread {data.get('thread_id')}, {data.get('finish_reason')}]", file=sys.stderr)
            return 0
        with client.stream("POST", url, json=payload, timeout=args.timeout) as resp:
            if resp.status_code >= 400:
                resp.read()
                return _error(resp, "run agent")
            for line in resp.iter_lines():
                if not line.startswith("data:"):
                    continue
                event = json.loads(line[len("data:"):].strip())
                if event.get("type") == "text":
                    print(event.get("text", ""), end="", flush=True)
                elif event.get("type") == "tool_call":
                    print(f"\n[tool {event.get('name')}]", file=sys.stderr)
                elif event.get("type") == "error":
                    print(f"\nRun failed: {event.get('error')}", file=sys.stderr)
                    return 1
                elif event.get("type") == "finish":
                    result = event.get("result") or {}
                    print()
                    print(f"[thread {result.get('thread_id')}, {result.get('finish_reason')}]", file=sys.stderr)
    return 0


def run_personas(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    path = "/api/personas/top" if args.personas_cmd == "top" else "/api/personas/most-used"
    with httpx.Client() as client:
        resp = client.get(_join_url(base, path), params={"limit": args.limit}, timeout=10)
        if resp.status_code >= 400:
            return _error(resp, "fetch personas")
        _print_personas(resp.json().get("personas") or [])
    return 0


def run_workflows_list(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(
            _join_url(base, "/api/workflows"), params={"limit": args.limit, "offset": args.offset}, timeout=10
        )
        if resp.status_code >= 400:
            return _error(resp, "list workflows")
        workflows = resp.json().get("workflows") or []
    if not workflows:
        print("No workflows.")
    for wf in workflows:
        steps = wf.get("steps") or []
        print(f"{wf.get('id')}  {wf.get('status'):<9}  {wf.get('current_step_index')}/{len(steps)}  {wf.get('name')}")
    return 0


def run_workflows_execute(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.post(
            _join_url(base, f"/api/workflows/{args.workflow_id}/execute"),
            json={"chain_output": not args.no_chain},
            timeout=args.timeout,
        )
        if resp.status_code >= 400:
            return _error(resp, "execute workflow")
        wf = resp.json()
    for step in wf.get("steps") or []:
        outcome = step.get("result") if step.get("status") == "completed" else step.get("error")
        print(f"#{step.get('position')} {step.get('agent_id')}: {step.get('status')} {outcome or ''}".rstrip())
    print(f"Workflow {wf.get('id')} is {wf.get('status')}.")
    return 0 if wf.get("status") != "failed" else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Agent orchestration CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Run an agent")
    run.add_argument("agent_id")
    run.add_argument("message", nargs="?", default="", help="User input (empty continues the thread)")
    run.add_argument("--thread", default=None, help="Existing thread id")
    run.add_argument("--stream", action="store_true", help="Stream tokens as they arrive")
    run.add_argument("--timeout", type=float, default=120, help="Request timeout seconds")

    personas = subparsers.add_parser("personas", help="Persona statistics")
    personas_sub = personas.add_subparsers(dest="personas_cmd")
    for name, help_text in (("top", "Best rated personas"), ("most-used", "Most used personas")):
        cmd = personas_sub.add_parser(name, help=help_text)
        cmd.add_argument("--limit", type=int, default=5)

    workflows = subparsers.add_parser("workflows", help="Workflow management")
    workflows_sub = workflows.add_subparsers(dest="workflows_cmd")
    wf_list = workflows_sub.add_parser("list", help="List workflows")
    wf_list.add_argument("--limit", type=int, default=10)
    wf_list.add_argument("--offset", type=int, default=0)
    wf_exec = workflows_sub.add_parser("execute", help="Run a workflow's remaining steps")
    wf_exec.add_argument("workflow_id")
    wf_exec.add_argument("--no-chain", action="store_true", help="Do not pass step output to the next step")
    wf_exec.add_argument("--timeout", type=float, default=600, help="Request timeout seconds")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "run":
        return run_agent(args)
    if args.command == "personas" and args.personas_cmd in ("top", "most-used"):
        return run_personas(args)
    if args.command == "workflows" and args.workflows_cmd == "list":
        return run_workflows_list(args)
    if args.command == "workflows" and args.workflows_cmd == "execute":
        return run_workflows_execute(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
