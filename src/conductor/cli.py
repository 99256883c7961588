"""CLI entry point for conductor."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

import typer

from conductor.config import ConductorConfig
from conductor.errors import ConfigurationError

app = typer.Typer(
    name="conductor",
    help="Run a tool-using, self-verifying LLM agent from the command line.",
    no_args_is_help=True,
)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _load_config(config_file: str | None, model: str | None) -> ConductorConfig:
    try:
        config = ConductorConfig.load(config_file)
    except ConfigurationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if model:
        config.llm.model = model
    return config


@app.command()
def ask(
    question: str = typer.Argument(help="What to ask the agent."),
    model: str | None = typer.Option(
        None, "--model", "-m", help="LLM model to use (default: from env/config)."
    ),
    transcript: str | None = typer.Option(
        None,
        "--transcript",
        "-t",
        help="JSONL transcript to continue; the turn is appended to it.",
    ),
    high_stakes: bool = typer.Option(
        False, "--high-stakes", help="Also run the semantic judge on the answer."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path (JSON or YAML)."
    ),
) -> None:
    """Run one turn and stream the agent's activity."""
    setup_logging(verbose)
    config = _load_config(config_file, model)
    if high_stakes:
        config.verification.high_stakes = True

    typer.echo(f"Model: {config.llm.model}", err=True)
    _show_api_key_status(config)

    try:
        ok = asyncio.run(_run_turn(question, config, transcript))
    except ConfigurationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if not ok:
        raise typer.Exit(2)


@app.command()
def tools(
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path (JSON or YAML)."
    ),
) -> None:
    """List the tools available to the agent."""
    from conductor.pipeline import build_tool_registry

    config = _load_config(config_file, None)
    registry = build_tool_registry(config)
    for name in registry.names():
        tool = registry.get(name)
        typer.echo(f"{name:<12} {tool.description if tool else ''}")
    if config.subagents.enabled:
        from conductor.agent.orchestrator import RESEARCH_TOOL_NAME

        typer.echo(f"{RESEARCH_TOOL_NAME:<12} Run research tasks in parallel subagents")


def _show_api_key_status(config: ConductorConfig) -> None:
    """Warn when the API key for the configured provider is missing."""
    provider_prefix = config.llm.model.split("/")[0] if "/" in config.llm.model else ""
    key_env_map = {
        "anthropic": "ANTHROPIC_API_KEY",
        "gemini": "GEMINI_API_KEY",
        "openai": "OPENAI_API_KEY",
    }
    env_var = key_env_map.get(provider_prefix, "")
    if env_var and not os.environ.get(env_var):
        typer.echo(f"WARNING: {env_var} is not set! Set it in .env or your shell.", err=True)


async def _run_turn(question: str, config: ConductorConfig, transcript: str | None) -> bool:
    """Run one turn with plain CLI output. Returns whether it completed."""
    from conductor.context import Conversation
    from conductor.llm.message import Message
    from conductor.pipeline import build_pipeline
    from conductor.session.wire import EventType

    pipeline = build_pipeline(config)

    if transcript:
        conversation = await Conversation.restore(Path(transcript))
    else:
        conversation = Conversation()
    conversation.append(Message.user(question))

    final = None
    async for event in pipeline.loop.stream(conversation):
        d = event.data
        if event.type == EventType.PHASE and d.get("phase") == "verify":
            typer.echo("", err=True)
        elif event.type == EventType.TEXT:
            typer.echo(d.get("text", ""), nl=False, err=True)
        elif event.type == EventType.TOOL_USE:
            typer.echo(f"\n  > {d.get('name', '?')}", err=True)
        elif event.type == EventType.TOOL_RESULT:
            status = "ERROR" if d.get("is_error") else "OK"
            first_line = (d.get("content") or status).split("\n")[0][:100]
            typer.echo(f"  < {d.get('name', '?')}: {first_line}", err=True)
        elif event.type == EventType.SUBAGENT_BEGIN:
            typer.echo(f"  [subagent {d.get('index')}] {d.get('task', '')[:80]}", err=True)
        elif event.type == EventType.SUBAGENT_END:
            state = "done" if d.get("ok") else f"failed: {d.get('error')}"
            typer.echo(f"  [subagent {d.get('index')}] {state}", err=True)
        elif event.type == EventType.COMPACTION:
            typer.echo(
                f"  [context compacted: {d.get('before')} -> {d.get('after')} messages]",
                err=True,
            )
        elif event.type == EventType.VERIFICATION and not d.get("passed"):
            typer.echo(f"  [verification failed]\n{d.get('feedback', '')}", err=True)
        elif event.type == EventType.FINAL:
            final = d["response"]

    if final is None:
        return False

    typer.echo("---", err=True)
    typer.echo(final.text)
    for citation in final.citations:
        typer.echo(f"  [{citation.id}] {citation.title}")

    if transcript:
        await final.conversation.save(Path(transcript))
    return final.ok


if __name__ == "__main__":
    app()
