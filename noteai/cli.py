"""
CLI for AI note generation.

Usage:
    noteai configure deepseek
    noteai apply deepseek deepseek-reasoner
    noteai generate "Plan my week" --show-thinking
"""

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import NoteAIContext, open_context
from .config import validate_settings
from .errors import CredentialStoreError, GenerationError, ProviderConfigError
from .logging_config import configure_quiet_mode, enable_debug_mode
from .thinking import detect_thinking_chain
from .types import DetectionResult, GenerationRequest, HistoryRecord

# Configure quiet mode by default (suppress verbose library output)
# Set NOTEAI_VERBOSE=1 to enable debug mode via environment
if os.environ.get("NOTEAI_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"noteai {version('noteai')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    global _verbose
    _verbose = value
    if value:
        enable_debug_mode()


# Global state for CLI options
_verbose = False
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _store_callback(value: Optional[Path]):
    global _store_override
    _store_override = value


app = typer.Typer(
    name="noteai",
    help="AI content generation for notes.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="NOTEAI_STORE_PATH",
        help="Path to the store directory",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """AI content generation for notes."""


def _open() -> NoteAIContext:
    """Open the store, exiting cleanly on failure."""
    try:
        return open_context(_store_override)
    except (OSError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _fail(e: Exception) -> None:
    """Report an error and exit."""
    if isinstance(e, GenerationError):
        typer.echo(f"Error: {e.user_message}", err=True)
        # Technical detail names the provider; shown only when asked for
        if _verbose:
            typer.echo(f"  ({e.code}) {e.technical_message}", err=True)
        else:
            typer.echo(f"  ({e.code})", err=True)
        for action in e.recovery_actions:
            typer.echo(f"  -> {action.label}", err=True)
    else:
        typer.echo(f"Error: {e}", err=True)
    raise typer.Exit(1)


def _format_record(record: HistoryRecord) -> str:
    note = record.note_id or "-"
    line = f"{record.id}  {record.created_at}  {record.status.value:<9}  {record.provider}/{record.model}  note={note}"
    if record.error_message:
        line += f"\n    error: {record.error_message}"
    else:
        preview = record.generated_content.replace("\n", " ")
        if len(preview) > 60:
            preview = preview[:60] + "..."
        line += f"\n    {preview}"
    return line


def _format_detection(result: DetectionResult) -> str:
    if not result.has_thinking_chain:
        return "No thinking chain detected."
    chain = result.thinking_content
    lines = [f"Format: {chain.detected_format.value}", f"Summary: {chain.summary}", ""]
    for i, step in enumerate(chain.steps, 1):
        lines.append(f"{i}. [{step.type.value}] {step.content}")
    lines.append("")
    lines.append("Content:")
    lines.append(result.clean_content)
    return "\n".join(lines)


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def providers():
    """List providers, their default models, and whether a key is stored."""
    with _open() as ctx:
        rows = []
        for provider_id in ctx.registry.get_all_provider_ids():
            spec = ctx.registry.get_provider_spec(provider_id)
            rows.append({
                "id": provider_id,
                "name": spec.name,
                "default_model": spec.default_model,
                "models": list(spec.supported_models),
                "thinking": spec.supports_thinking,
                "configured": ctx.service.is_provider_configured(provider_id),
            })
    if _json_output:
        typer.echo(json.dumps(rows, indent=2))
        return
    for row in rows:
        mark = "*" if row["configured"] else " "
        thinking = "  [thinking]" if row["thinking"] else ""
        typer.echo(f"{mark} {row['id']:<12} {row['default_model']:<28}{thinking}")


@app.command()
def configure(
    provider: Annotated[str, typer.Argument(help="Provider id")],
    api_key: Annotated[Optional[str], typer.Option(
        "--api-key", "-k",
        help="API key (prompted for if omitted)",
    )] = None,
):
    """Store an API key for a provider."""
    if api_key is None:
        api_key = typer.prompt(f"API key for {provider}", hide_input=True)
    with _open() as ctx:
        try:
            ctx.service.configure_provider(provider, api_key)
        except (GenerationError, CredentialStoreError) as e:
            _fail(e)
    typer.echo(f"Stored API key for {provider}")


@app.command("test")
def test_config(
    provider: Annotated[str, typer.Argument(help="Provider id")],
    model: Annotated[Optional[str], typer.Argument(help="Model (default: provider default)")] = None,
    api_key: Annotated[Optional[str], typer.Option(
        "--api-key", "-k",
        help="API key to test (default: the stored key)",
    )] = None,
):
    """Test a provider/model with one request, without applying it."""
    with _open() as ctx:
        if not ctx.registry.is_valid_provider_id(provider):
            typer.echo(f"Error: Unknown provider: {provider}", err=True)
            raise typer.Exit(1)
        model = model or ctx.registry.get_default_model(provider)
        key = api_key or ctx.credentials.get_api_key(provider)
        if not key:
            typer.echo(f"Error: No API key for {provider}. Use --api-key or 'noteai configure {provider}'.", err=True)
            raise typer.Exit(1)
        try:
            ok = asyncio.run(ctx.service.test_configuration(provider, model, key))
        except CredentialStoreError as e:
            _fail(e)
    if ok:
        typer.echo(f"OK: {provider}/{model}")
    else:
        typer.echo(f"Failed: {provider}/{model}", err=True)
        raise typer.Exit(1)


@app.command()
def apply(
    provider: Annotated[str, typer.Argument(help="Provider id")],
    model: Annotated[Optional[str], typer.Argument(help="Model (default: last used or provider default)")] = None,
):
    """Make a provider/model the active configuration."""
    with _open() as ctx:
        try:
            active = ctx.service.apply_configuration(provider, model)
        except GenerationError as e:
            _fail(e)
    typer.echo(f"Active: {active.provider}/{active.model}")


@app.command()
def status():
    """Show the active configuration and settings."""
    with _open() as ctx:
        settings = ctx.service.get_settings()
        report = validate_settings(settings)
        configured = ctx.service.is_provider_configured(settings.active_config.provider)
        store_path = ctx.config.path
    if _json_output:
        typer.echo(json.dumps({
            "store": str(store_path),
            "settings": settings.to_dict(),
            "api_key_configured": configured,
            "errors": report.errors,
            "warnings": report.warnings,
        }, indent=2))
        return
    active = settings.active_config
    typer.echo(f"Store:       {store_path}")
    typer.echo(f"Provider:    {active.provider}")
    typer.echo(f"Model:       {active.model}")
    typer.echo(f"Applied at:  {active.applied_at}")
    typer.echo(f"API key:     {'configured' if configured else 'missing'}")
    typer.echo(f"Temperature: {settings.temperature}")
    typer.echo(f"Max tokens:  {settings.max_tokens}")
    typer.echo(f"Streaming:   {'on' if settings.stream else 'off'}")
    for error in report.errors:
        typer.echo(f"Error: {error}", err=True)
    for warning in report.warnings:
        typer.echo(f"Warning: {warning}", err=True)


@app.command()
def generate(
    prompt: Annotated[str, typer.Argument(help="Prompt text")],
    note_id: Annotated[Optional[str], typer.Option("--note-id", "-n", help="Note the content is for")] = None,
    model: Annotated[Optional[str], typer.Option("--model", "-m", help="Override the active model")] = None,
    no_stream: Annotated[bool, typer.Option("--no-stream", help="Wait for the full response")] = False,
    show_thinking: Annotated[bool, typer.Option("--show-thinking", "-t", help="Print reasoning steps")] = False,
):
    """Generate content with the active provider."""
    printed = {"length": 0}

    def on_stream(text: str, chunk: Optional[dict]) -> None:
        if no_stream or _json_output:
            return
        sys.stdout.write(text[printed["length"]:])
        sys.stdout.flush()
        printed["length"] = len(text)

    request = GenerationRequest(
        note_id=note_id,
        prompt=prompt,
        model=model,
        stream=False if no_stream else None,
        on_stream=on_stream,
    )
    with _open() as ctx:
        try:
            record = asyncio.run(ctx.service.generate_note(request))
        except GenerationError as e:
            if printed["length"]:
                typer.echo("")
            _fail(e)

    if _json_output:
        typer.echo(json.dumps(record.to_dict(), indent=2, ensure_ascii=False))
        return
    if printed["length"]:
        typer.echo("")
        if record.thinking_chain is not None:
            # Streamed text included the reasoning block; show the clean form too
            typer.echo("\n--- content ---")
            typer.echo(record.generated_content)
    else:
        typer.echo(record.generated_content)
    if show_thinking and record.thinking_chain is not None:
        chain = record.thinking_chain
        typer.echo(f"\n--- thinking: {chain.summary} ---")
        for i, step in enumerate(chain.steps, 1):
            typer.echo(f"{i}. [{step.type.value}] {step.content}")


@app.command()
def history(
    note_id: Annotated[Optional[str], typer.Option("--note-id", "-n", help="Only this note")] = None,
    limit: Annotated[int, typer.Option("--limit", "-l", help="Maximum records")] = 20,
):
    """List recent generation attempts."""
    with _open() as ctx:
        records = ctx.service.list_history(limit=limit, note_id=note_id)
    if _json_output:
        typer.echo(json.dumps([r.to_dict() for r in records], indent=2, ensure_ascii=False))
        return
    if not records:
        typer.echo("No history.")
        return
    for record in records:
        typer.echo(_format_record(record))


@app.command()
def detect(
    file: Annotated[Optional[Path], typer.Argument(help="File to scan (default: stdin)")] = None,
    chunk: Annotated[bool, typer.Option("--chunk", "-c", help="Input is a JSON stream chunk")] = False,
):
    """Detect and segment a thinking chain in response text."""
    if file is not None:
        try:
            content = file.read_text(encoding="utf-8")
        except OSError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1)
    else:
        content = sys.stdin.read()

    if chunk:
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            typer.echo(f"Error: Invalid JSON chunk: {e}", err=True)
            raise typer.Exit(1)
        result = detect_thinking_chain(chunk=data)
    else:
        result = detect_thinking_chain(text=content)

    if _json_output:
        typer.echo(json.dumps({
            "has_thinking_chain": result.has_thinking_chain,
            "thinking_content": result.thinking_content.to_dict() if result.thinking_content else None,
            "clean_content": result.clean_content,
        }, indent=2, ensure_ascii=False))
        return
    typer.echo(_format_detection(result))


@app.command("clear-key")
def clear_key(
    provider: Annotated[str, typer.Argument(help="Provider id")],
):
    """Remove the stored API key for a provider."""
    with _open() as ctx:
        try:
            ctx.registry.get_provider_spec(provider)
        except ProviderConfigError as e:
            _fail(e)
        removed = ctx.credentials.clear_api_key(provider)
    if removed:
        typer.echo(f"Removed API key for {provider}")
    else:
        typer.echo(f"No API key stored for {provider}")


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="noteai CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
