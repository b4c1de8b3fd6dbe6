"""
Command-line interface for skillflow.

Usage:
    skillflow validate workflow.json
    skillflow plan workflow.json [--waves]
    skillflow run workflow.json --input '{"code": "def f(): ..."}' \
        [--capability-url http://localhost:8080] [--parallel]
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from skillflow.config import EngineConfig
from skillflow.graph.executor import GraphExecutor
from skillflow.graph.planner import ExecutionPlanner
from skillflow.graph.validator import GraphValidator
from skillflow.graph.workflow import ExecutionResult
from skillflow.observability import configure_logging
from skillflow.runtime.capability import HttpCapabilityProvider
from skillflow.runtime.telemetry import TelemetrySink


def _load_json(path: str) -> dict[str, Any]:
    with open(Path(path), encoding="utf-8") as f:
        return json.load(f)


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate a workflow file and print the report."""
    report = GraphValidator().validate(_load_json(args.workflow))
    print(
        json.dumps(
            {"valid": report.valid, "errors": report.errors, "warnings": report.warnings},
            indent=2,
        )
    )
    return 0 if report.valid else 1


def cmd_plan(args: argparse.Namespace) -> int:
    """Print the execution order (or dependency waves) of a valid workflow."""
    report = GraphValidator().validate(_load_json(args.workflow))
    if not report.valid or report.workflow is None:
        print(json.dumps({"valid": False, "errors": report.errors}, indent=2))
        return 1

    planner = ExecutionPlanner()
    if args.waves:
        plan: Any = [[node.id for node in wave] for wave in planner.waves(report.workflow)]
    else:
        plan = [node.id for node in planner.order(report.workflow)]
    print(json.dumps({"valid": True, "plan": plan}, indent=2))
    return 0


async def _run(args: argparse.Namespace, config: EngineConfig) -> ExecutionResult:
    workflow = _load_json(args.workflow)
    inputs = json.loads(args.input) if args.input else {}
    url = args.capability_url or config.capability_url

    async with HttpCapabilityProvider(url, timeout=config.request_timeout_ms / 1000) as provider:
        async with TelemetrySink.from_config(config) as telemetry:
            executor = GraphExecutor(
                provider, telemetry=telemetry, config=config, parallel=args.parallel
            )
            return await executor.execute(workflow, inputs)


def cmd_run(args: argparse.Namespace) -> int:
    """Execute a workflow against an HTTP capability backend."""
    config = EngineConfig.load()
    if not (args.capability_url or config.capability_url):
        print(
            "Error: no capability backend configured "
            "(pass --capability-url or set SKILLFLOW_CAPABILITY_URL)",
            file=sys.stderr,
        )
        return 2
    try:
        if args.input:
            json.loads(args.input)
    except json.JSONDecodeError as e:
        print(f"Error: --input is not valid JSON: {e}", file=sys.stderr)
        return 2

    result = asyncio.run(_run(args, config))
    print(result.to_json())
    return 0 if result.success else 1


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    validate_parser = subparsers.add_parser("validate", help="Validate a workflow file")
    validate_parser.add_argument("workflow", help="Path to workflow JSON")
    validate_parser.set_defaults(func=cmd_validate)

    plan_parser = subparsers.add_parser("plan", help="Show the execution order of a workflow")
    plan_parser.add_argument("workflow", help="Path to workflow JSON")
    plan_parser.add_argument(
        "--waves", action="store_true", help="Group nodes into concurrent dependency waves"
    )
    plan_parser.set_defaults(func=cmd_plan)

    run_parser = subparsers.add_parser("run", help="Execute a workflow")
    run_parser.add_argument("workflow", help="Path to workflow JSON")
    run_parser.add_argument("--input", "-i", default=None, help="Input values as JSON")
    run_parser.add_argument(
        "--capability-url", default=None, help="Base URL of the capability backend"
    )
    run_parser.add_argument(
        "--parallel", action="store_true", help="Run independent nodes concurrently"
    )
    run_parser.set_defaults(func=cmd_run)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="skillflow",
        description="skillflow - validate and execute skill workflows",
    )
    parser.add_argument("--log-level", default="WARNING", help="Logging level")
    parser.add_argument(
        "--log-format", default="auto", choices=["auto", "json", "human"], help="Log format"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args(argv)
    configure_logging(level=args.log_level, format=args.log_format)
    try:
        return args.func(args)
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
