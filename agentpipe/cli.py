"""Command-line entry point for agentpipe.

``agentpipe run PROMPT`` sends one prompt to the agent CLI and prints the
answer.
"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Optional

import anyio
import click
from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel

from agentpipe import __version__
from agentpipe._errors import AgentSDKError, ProcessError
from agentpipe.client import query
from agentpipe.types import (
    AgentOptions,
    AssistantMessage,
    Message,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)
from agentpipe.utils.log import get_logger, init_logger

console = Console()
err_console = Console(stderr=True)
logger = get_logger()

_MESSAGE_TYPES = {
    UserMessage: "user",
    AssistantMessage: "assistant",
    SystemMessage: "system",
    ResultMessage: "result",
}


def message_to_json(message: Message) -> str:
    """Serialize a typed message as one JSON line."""
    payload: dict[str, Any] = {"type": _MESSAGE_TYPES[type(message)], **asdict(message)}
    return json.dumps(payload, ensure_ascii=False, default=str)


def render_message(message: Message, verbose: bool = False) -> None:
    """Print one message for a human reader."""
    if isinstance(message, AssistantMessage):
        for block in message.content.blocks:
            if isinstance(block, TextBlock):
                if block.text.strip():
                    console.print(
                        Panel(
                            Markdown(block.text),
                            title=message.model or "Assistant",
                            border_style="cyan",
                            padding=(0, 1),
                        )
                    )
            elif isinstance(block, ToolUseBlock):
                args = json.dumps(block.input, ensure_ascii=False)
                console.print(f"[yellow]⏺ {escape(block.name)}[/yellow] [dim]{escape(args)}[/dim]")
        if message.error:
            console.print(f"[red]Assistant error: {escape(message.error)}[/red]")
    elif isinstance(message, UserMessage):
        if not verbose:
            return
        for block in message.content.blocks:
            if isinstance(block, ToolResultBlock):
                style = "red" if block.is_error else "dim"
                console.print(f"[{style}]  ⎿ {escape(str(block.content)[:500])}[/{style}]")
    elif isinstance(message, SystemMessage):
        if verbose:
            console.print(f"[dim]System: {escape(message.subtype)}[/dim]")
    elif isinstance(message, ResultMessage):
        cost = f"${message.total_cost_usd:.4f}" if message.total_cost_usd is not None else "n/a"
        style = "red" if message.is_error else "green"
        console.print(
            f"[{style}]{escape(message.subtype)}[/{style}] "
            f"[dim]turns={message.num_turns} duration={message.duration_ms}ms cost={cost} "
            f"session={escape(message.session_id)}[/dim]"
        )


async def run_prompt(prompt: str, options: AgentOptions, as_json: bool, verbose: bool) -> bool:
    """Run ``prompt`` once. Returns False if the CLI reported an error result."""
    logger.info(
        "[cli] Running single prompt",
        extra={"cli_path": options.cli_path, "model": options.model, "prompt_length": len(prompt)},
    )
    ok = True
    async for message in query(prompt=prompt, options=options):
        if isinstance(message, ResultMessage) and message.is_error:
            ok = False
        if as_json:
            click.echo(message_to_json(message))
        else:
            render_message(message, verbose=verbose)
    return ok


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Drive an agent CLI over stream-json stdio."""


@cli.command("run")
@click.argument("prompt")
@click.option("--cli-path", type=click.Path(), help="Path to the agent CLI executable")
@click.option("--cwd", type=click.Path(exists=True, file_okay=False), help="Working directory")
@click.option("--model", type=str, help="Model to request")
@click.option("--max-turns", type=int, help="Maximum number of agent turns")
@click.option(
    "--permission-mode",
    type=click.Choice(["default", "acceptEdits", "plan", "bypassPermissions"]),
    help="Permission mode for tool use",
)
@click.option("--json", "as_json", is_flag=True, help="Print each message as a JSON line")
@click.option("--verbose", is_flag=True, help="Verbose output")
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Also write debug logs to this file",
)
def run_cmd(
    prompt: str,
    cli_path: Optional[str],
    cwd: Optional[str],
    model: Optional[str],
    max_turns: Optional[int],
    permission_mode: Optional[str],
    as_json: bool,
    verbose: bool,
    log_file: Optional[Path],
) -> None:
    """Send PROMPT to the agent CLI and print the response."""
    if log_file is not None:
        init_logger(log_file)
    if verbose:
        logger.set_console_level(logging.DEBUG)

    options = AgentOptions(
        cli_path=cli_path,
        cwd=cwd,
        model=model,
        max_turns=max_turns,
        permission_mode=permission_mode,  # type: ignore[arg-type]
    )

    try:
        ok = anyio.run(run_prompt, prompt, options, as_json, verbose)
    except ProcessError as e:
        err_console.print(f"[red]Agent CLI failed: {escape(str(e))}[/red]")
        sys.exit(1)
    except AgentSDKError as e:
        err_console.print(f"[red]Error: {escape(str(e))}[/red]")
        sys.exit(1)

    if not ok:
        sys.exit(1)


def main() -> None:
    """Entry point for the ``agentpipe`` console script."""
    try:
        cli()
    except KeyboardInterrupt:
        err_console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
