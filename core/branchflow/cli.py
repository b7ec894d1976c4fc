"""
Command-line interface for branchflow.

Usage:
    branchflow run workflow.json --input '{"input": "hello"}'
    branchflow run workflow.json --branching --timeout-ms 5000
    branchflow run workflow.json --linear
    branchflow validate workflow.json
    branchflow plugins
"""

import argparse
import asyncio
import json
import sys
from typing import Any

from branchflow.config import EngineConfig
from branchflow.errors import CompileError
from branchflow.graph.compiler import CompileOptions
from branchflow.graph.workflow import load_workflow
from branchflow.observability import configure_logging
from branchflow.schemas.execution import ExecutionOptions, ExecutionStatus


def _parse_input(raw: str | None) -> Any:
    if raw is None:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        # Bare strings are accepted as the conventional {"input": ...} payload
        return {"input": raw}


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _load(path: str):
    try:
        return load_workflow(path)
    except (OSError, ValueError) as e:
        print(f"Cannot load workflow {path}: {e}", file=sys.stderr)
        return None


def cmd_run(args: argparse.Namespace) -> int:
    from branchflow.engine import Engine

    workflow = _load(args.workflow)
    if workflow is None:
        return 2
    input = _parse_input(args.input)
    engine = Engine.create(config=args.config)

    async def run() -> int:
        await engine.start()
        try:
            if args.linear:
                result = await engine.executor.execute(
                    workflow,
                    input,
                    CompileOptions(
                        services=engine.services,
                        event_bus=engine.event_bus,
                        timeout_ms=args.timeout_ms,
                    ),
                )
                _print_json(
                    {"status": result.status.value, "result": result.result, "error": result.error}
                )
                return 0 if result.success else 1

            record = await engine.execution.run_workflow(
                workflow,
                input,
                ExecutionOptions(
                    enable_branching=args.branching,
                    timeout_ms=args.timeout_ms,
                ),
            )
            _print_json(record.model_dump(mode="json"))
            return 0 if record.status == ExecutionStatus.COMPLETED else 1
        finally:
            await engine.stop()

    return asyncio.run(run())


def cmd_validate(args: argparse.Namespace) -> int:
    from branchflow.engine import Engine

    workflow = _load(args.workflow)
    if workflow is None:
        return 2
    engine = Engine.create(config=args.config)
    try:
        executable = engine.compiler.compile(workflow)
    except CompileError as e:
        print(f"Invalid: {e}", file=sys.stderr)
        return 1
    print(f"Valid: {workflow.id} ({' -> '.join(executable.node_order)})")
    return 0


def cmd_plugins(args: argparse.Namespace) -> int:
    from branchflow.engine import Engine

    engine = Engine.create(config=args.config)
    for plugin in engine.registry.get_all_node_plugins():
        meta = plugin.metadata
        print(f"{plugin.node_type:<14} {meta.id} v{meta.version}  {meta.description}")
    return 0


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    run_parser = subparsers.add_parser("run", help="Run a workflow")
    run_parser.add_argument("workflow", help="Path to a workflow JSON file")
    run_parser.add_argument("--input", "-i", help="Input as JSON (a bare string becomes {'input': ...})")
    run_parser.add_argument("--branching", action="store_true", help="Track branches")
    run_parser.add_argument("--timeout-ms", type=int, default=None, help="Per-node timeout")
    run_parser.add_argument(
        "--linear",
        action="store_true",
        help="Run the compiled pipeline directly, without execution tracking",
    )
    run_parser.set_defaults(func=cmd_run)

    validate_parser = subparsers.add_parser("validate", help="Compile a workflow without running it")
    validate_parser.add_argument("workflow", help="Path to a workflow JSON file")
    validate_parser.set_defaults(func=cmd_validate)

    plugins_parser = subparsers.add_parser("plugins", help="List registered node plugins")
    plugins_parser.set_defaults(func=cmd_plugins)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="branchflow",
        description="branchflow - Run plugin-based workflows with branch tracking",
    )
    parser.add_argument("--log-level", default=None, help="Override the configured log level")
    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = EngineConfig()
    if args.log_level:
        config.log_level = args.log_level.upper()
    configure_logging(level=config.log_level, format=config.log_format)
    args.config = config

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
