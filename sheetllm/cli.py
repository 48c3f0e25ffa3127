"""
SheetLLM CLI - Command Line Interface

Run sheet operations over a JSON file of rows, inspect configuration, or start
the HTTP server.

Usage:
    python -m sheetllm.cli --help
    python -m sheetllm.cli --serve --port 5000
    python -m sheetllm.cli --action inference --data rows.json --model gpt-4o-mini --user-input question
    python -m sheetllm.cli --action augment --data rows.json --column question --factor 3 \\
        --augment-prompt "Paraphrase the question"
    python -m sheetllm.cli --action evaluate --data rows.json --evaluation-settings rubric.json

Credentials:
    --credentials FILE reads {"providers": [...]} (the same JSON the editor sends);
    --api-key or the OPENAI_API_KEY environment variable sets the OpenAI token.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import __version__
from .config import Config, create_sample_config, load_config
from .connector.connector_genai import (
    DEFAULT_PROVIDER,
    CredentialStore,
    ProviderCredential,
    SheetLLMError,
    mask_secret,
)
from .tasker.genai_tasker import Session, configure_logging, request_from_payload
from .tasker.data_stage import DataSet, OperationResult, run_operation

__all__ = [
    "Colors",
    "cprint",
    "print_success",
    "print_error",
    "print_warning",
    "print_info",
    "print_header",
    "print_table",
    "print_summary",
    "print_progress",
    "format_duration",
    "build_parser",
    "main",
]

logger = logging.getLogger("SheetLLM.CLI")


# ============================================================================
# OUTPUT UTILITIES
# ============================================================================

class Colors:
    """ANSI color codes."""
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    CYAN = "\033[96m"
    WHITE = "\033[97m"
    GRAY = "\033[90m"

    # Semantic colors
    SUCCESS = GREEN
    ERROR = RED
    WARNING = YELLOW
    INFO = CYAN

    @classmethod
    def disable(cls) -> None:
        """Disable colors for non-TTY output."""
        for attr in dir(cls):
            if not attr.startswith('_') and isinstance(getattr(cls, attr), str):
                setattr(cls, attr, '')


if not sys.stdout.isatty():
    Colors.disable()


def cprint(message: str, color: str = "", bold: bool = False, file=None) -> None:
    """Print colored message to terminal."""
    prefix = (Colors.BOLD if bold else "") + color
    suffix = Colors.RESET if prefix else ""
    print(f"{prefix}{message}{suffix}", file=file or sys.stdout)


def print_success(message: str) -> None:
    cprint(f"✓ {message}", Colors.SUCCESS)


def print_error(message: str) -> None:
    cprint(f"✗ {message}", Colors.ERROR, file=sys.stderr)


def print_warning(message: str) -> None:
    cprint(f"⚠ {message}", Colors.WARNING)


def print_info(message: str) -> None:
    cprint(f"ℹ {message}", Colors.INFO)


def print_header(title: str, width: int = 70, char: str = "=") -> None:
    """Print formatted section header."""
    print()
    cprint(char * width, Colors.CYAN, bold=True)
    cprint(f" {title}", Colors.CYAN, bold=True)
    cprint(char * width, Colors.CYAN, bold=True)


def print_table(headers: List[str], rows: List[List[Any]], max_col_width: int = 40) -> None:
    """Print formatted ASCII table."""
    if not headers or not rows:
        return

    col_widths = []
    for i, header in enumerate(headers):
        max_width = len(str(header))
        for row in rows:
            if i < len(row):
                max_width = max(max_width, len(str(row[i])))
        col_widths.append(min(max_width, max_col_width))

    def truncate(value: Any, width: int) -> str:
        s = "" if value is None else str(value).replace("\n", " ")
        return s[:width - 3] + "..." if len(s) > width else s

    header_row = " │ ".join(truncate(h, w).ljust(w) for h, w in zip(headers, col_widths))
    separator = "─┼─".join("─" * w for w in col_widths)

    print()
    cprint(header_row, Colors.CYAN, bold=True)
    print(separator)
    for row in rows:
        print(" │ ".join(
            truncate(row[i] if i < len(row) else "", w).ljust(w)
            for i, w in enumerate(col_widths)
        ))
    print()


def print_summary(stats: Dict[str, Any], title: str = "SUMMARY", width: int = 70) -> None:
    """Print formatted summary statistics."""
    print_header(title, width)
    for key, value in stats.items():
        key_display = key.replace('_', ' ').title()
        if 'error' in key.lower() or 'failed' in key.lower():
            color = Colors.ERROR if value else Colors.GRAY
        elif isinstance(value, bool):
            color = Colors.SUCCESS if value else Colors.WARNING
        else:
            color = Colors.WHITE
        print(f"  {key_display}: ", end="")
        cprint(str(value), color)
    cprint("=" * width, Colors.CYAN, bold=True)


def print_progress(current: int, total: int, prefix: str = "", width: int = 40,
                   fill: str = "█", empty: str = "░") -> None:
    """Print progress bar."""
    if total == 0:
        percent, filled = 100.0, width
    else:
        percent = (current / total) * 100
        filled = int(width * current // total)

    bar = fill * filled + empty * (width - filled)
    if percent < 33:
        color = Colors.RED
    elif percent < 66:
        color = Colors.YELLOW
    else:
        color = Colors.GREEN

    print(f"\r{prefix} {color}|{bar}|{Colors.RESET} {percent:5.1f}% ({current}/{total})", end="", flush=True)
    if current >= total:
        print()


def format_duration(seconds: float) -> str:
    """Format duration in human-readable format."""
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    elif seconds < 60:
        return f"{seconds:.1f}s"
    minutes = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{minutes}m {secs}s"


# ============================================================================
# COMMANDS
# ============================================================================

def list_providers(credentials: CredentialStore) -> None:
    """List provider kinds and the credentials currently loaded."""
    print_header("Providers")
    print(f"  • {DEFAULT_PROVIDER}: OpenAI chat completions (bearer token)")
    print("  • clova: two-step OAuth (client id + client secret)")
    print("  • <any name> + --host-url: generic bearer host")
    print()
    cprint("  Loaded credentials:", bold=True)
    for credential in credentials:
        token = mask_secret(credential.bearer_token or credential.client_id)
        print(f"    • {credential.name}: {token}")
    print()


def show_config(config: Config) -> None:
    """Show the resolved configuration and where each value came from."""
    print_header("Configuration")
    rows = []
    for key, value in sorted(config.all().items()):
        source = config.get_source(key)
        rows.append([key, value, source.value if source else ""])
    print_table(["Key", "Value", "Source"], rows, max_col_width=60)


def _read_json(path: str) -> Any:
    file_path = Path(path)
    if not file_path.exists():
        raise SheetLLMError(f"File not found: {path}")
    with open(file_path, "r", encoding="utf-8") as f:
        return json.load(f)


def load_credentials(args: argparse.Namespace, config: Config) -> CredentialStore:
    keyring_fallback = bool(config.get("credentials.keyring_fallback", False))
    payload = _read_json(args.credentials) if args.credentials else None
    store = CredentialStore.from_payload(payload, keyring_fallback=keyring_fallback)

    api_key = args.api_key or os.environ.get("OPENAI_API_KEY")
    if api_key:
        store.set(ProviderCredential(name=DEFAULT_PROVIDER, bearer_token=api_key))
    return store


def build_payload(args: argparse.Namespace) -> Dict[str, Any]:
    """Maps CLI flags to the same body the editor posts to /llm."""
    payload: Dict[str, Any] = {
        "action": args.action,
        "modelName": args.model,
        "selectedProvider": args.provider,
        "hostUrl": args.host_url,
        "systemPrompt": args.system_prompt,
        "userInput": args.user_input,
        "outputColumn": args.output_column,
        "augmentationFactor": args.factor,
        "augmentationPrompt": args.augment_prompt,
        "selectedColumn": args.column,
    }
    if args.evaluation_settings:
        payload["evaluationSettings"] = _read_json(args.evaluation_settings)
    return {k: v for k, v in payload.items() if v is not None}


def _load_rows(path: str) -> List[Dict[str, Any]]:
    data = _read_json(path)
    if isinstance(data, dict):
        data = data.get("data") or data.get("rows")
    if not isinstance(data, list):
        raise SheetLLMError(f"{path} must contain a list of rows")
    return data


def run_action(args: argparse.Namespace, config: Config) -> OperationResult:
    """Runs one operation over the rows in ``args.data``."""
    operation_request = request_from_payload(build_payload(args), config)
    dataset = DataSet.from_rows(_load_rows(args.data))
    session = Session(credentials=load_credentials(args, config), config=config)

    print_info(f"{operation_request.kind.value}: {len(dataset)} rows, batch size {session.batch_size}")

    def on_progress(completed: int, total: int) -> None:
        if not args.quiet:
            print_progress(completed, total, prefix="  Progress")

    return asyncio.run(run_operation(
        operation_request, dataset, session,
        progress_callback=on_progress,
        remote_url=args.remote_url,
    ))


def report(result: OperationResult, output: Optional[str], quiet: bool) -> None:
    if output:
        with open(output, "w", encoding="utf-8") as f:
            json.dump(result.to_dict(), f, indent=2, ensure_ascii=False)
        print_success(f"Result written to {output}")

    if not quiet:
        headers = result.schema.names
        print_table(headers, [[row.get(h) for h in headers] for row in result.rows])

    for error in result.errors:
        print_warning(error)

    print_summary({
        "operation": result.operation_type,
        "output_rows": len(result.rows),
        "batches": result.batches,
        "failed_rows": sum(1 for outcome in result.outcomes if not outcome.ok),
        "batch_errors": len(result.errors),
        "execution_time": format_duration(result.execution_time),
    })


# ============================================================================
# ENTRY POINT
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sheetllm",
        description="SheetLLM - LLM batch operations for spreadsheet data",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  sheetllm --serve
  sheetllm --action inference --data rows.json --model gpt-4o-mini --user-input question
  sheetllm --action augment --data rows.json --column question --factor 3 --augment-prompt "Paraphrase"
  sheetllm --show-config --config sheetllm.toml
        """
    )
    parser.add_argument("--version", "-v", action="version", version=f"SheetLLM v{__version__}")
    parser.add_argument("--config", "-c", help="Configuration file (TOML, JSON or YAML)")
    parser.add_argument("--log-level", default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging level")
    parser.add_argument("--quiet", "-q", action="store_true", help="Only print the summary")

    cmd = parser.add_argument_group("Commands")
    cmd.add_argument("--serve", action="store_true", help="Start the HTTP server")
    cmd.add_argument("--list-providers", action="store_true", help="List provider kinds and loaded credentials")
    cmd.add_argument("--show-config", action="store_true", help="Show the resolved configuration")
    cmd.add_argument("--create-config", metavar="PATH", help="Write a sample configuration file")
    cmd.add_argument("--action", "-a", choices=["inference", "evaluate", "augment"], help="Operation to run")

    srv = parser.add_argument_group("Server")
    srv.add_argument("--host", help="Bind address (default: server.host)")
    srv.add_argument("--port", type=int, help="Port (default: server.port)")

    run = parser.add_argument_group("Operation")
    run.add_argument("--data", "-d", help="JSON file with a list of rows")
    run.add_argument("--model", "-m", help="Model name")
    run.add_argument("--provider", "-p", help="Provider name (default: openai)")
    run.add_argument("--host-url", help="URL of a generic bearer host")
    run.add_argument("--system-prompt", help="Column holding the system prompt")
    run.add_argument("--user-input", help="Column holding the user input")
    run.add_argument("--output-column", help="Column receiving the inference reply")
    run.add_argument("--factor", type=int, help="Augmentation factor (rows per input row)")
    run.add_argument("--augment-prompt", help="Augmentation instruction")
    run.add_argument("--column", help="Column to augment")
    run.add_argument("--evaluation-settings", help="JSON file with evaluation settings")
    run.add_argument("--batch-size", type=int, help="Rows per batch (default: batch.size)")
    run.add_argument("--remote-url", help="Send each batch to this /llm endpoint instead of running locally")
    run.add_argument("--output", "-o", help="Write the full result as JSON")

    cred = parser.add_argument_group("Credentials")
    cred.add_argument("--credentials", help='JSON file: {"providers": [{"name", "bearerToken", ...}]}')
    cred.add_argument("--api-key", help="OpenAI API key (default: OPENAI_API_KEY)")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    config = load_config(filepath=args.config)
    if args.batch_size:
        config.set("batch.size", args.batch_size)

    try:
        config.validate()
        if args.create_config:
            if not create_sample_config(args.create_config):
                print_error(f"Could not write {args.create_config}")
                return 1
            print_success(f"Sample configuration written to {args.create_config}")
        elif args.show_config:
            show_config(config)
        elif args.list_providers:
            list_providers(load_credentials(args, config))
        elif args.serve:
            from .server import serve
            serve(config, host=args.host, port=args.port)
        elif args.action:
            if not args.data:
                parser.error("--action requires --data")
            report(run_action(args, config), args.output, args.quiet)
        else:
            parser.print_help()
    except (SheetLLMError, ValueError) as e:
        print_error(str(e))
        return 1
    except KeyboardInterrupt:
        print_warning("Interrupted")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
