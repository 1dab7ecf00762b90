"""CLI entry point for ai-providers.

Thin terminal front-end over AIProvidersService, driven by the same
AI_PROVIDER_* environment configuration a host would use.

Entry point:
    ai-providers models [--provider ID]
    ai-providers chat PROMPT [--system S] [--image URL]... [--metrics]
    ai-providers embed TEXT...
    ai-providers capabilities [--probe]
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from dotenv import load_dotenv

from ai_providers.capabilities import capabilities_display_text
from ai_providers.config import ProviderDescriptor, load_settings_from_env
from ai_providers.schema import EmbedRequest, ExecuteRequest, UsageMetrics
from ai_providers.service import AIProvidersService

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────
# ARGUMENT PARSING
# ─────────────────────────────────────────────────────────────────────


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ai-providers",
        description="Talk to configured AI providers from the terminal.",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable debug logging"
    )
    parser.add_argument(
        "--provider", default=None, help="Provider ID (default: first configured)"
    )
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("models", help="List models the provider serves")

    chat_p = sub.add_parser("chat", help="Stream a completion to stdout")
    chat_p.add_argument("prompt", help="User prompt")
    chat_p.add_argument("--system", default=None, help="System prompt")
    chat_p.add_argument(
        "--image", action="append", default=[], dest="images",
        help="Image URL or data URL (repeatable)",
    )
    chat_p.add_argument(
        "--metrics", action="store_true", help="Print performance metrics to stderr"
    )

    embed_p = sub.add_parser("embed", help="Print embedding vectors as JSON")
    embed_p.add_argument("texts", nargs="+", help="Text(s) to embed")

    caps_p = sub.add_parser("capabilities", help="Show the provider's capability set")
    caps_p.add_argument(
        "--probe", action="store_true",
        help="Ask the backend (Ollama) instead of using static detection",
    )

    return parser


# ─────────────────────────────────────────────────────────────────────
# COMMANDS
# ─────────────────────────────────────────────────────────────────────


def _select_provider(
    service: AIProvidersService, provider_id: Optional[str]
) -> Optional[ProviderDescriptor]:
    if provider_id is None:
        return service.providers[0] if service.providers else None
    return service.get_provider(provider_id)


def _format_metrics(metrics: UsageMetrics) -> str:
    parts = [f"{metrics.duration_ms:.0f} ms"]
    if metrics.usage.prompt_tokens is not None:
        parts.append(f"prompt {metrics.usage.prompt_tokens} tok")
    if metrics.usage.completion_tokens is not None:
        parts.append(f"completion {metrics.usage.completion_tokens} tok")
    if metrics.tokens_per_second is not None:
        parts.append(f"{metrics.tokens_per_second:.1f} tok/s")
    if metrics.first_token_latency_ms is not None:
        parts.append(f"first token {metrics.first_token_latency_ms:.0f} ms")
    return ", ".join(parts)


async def _cmd_models(service: AIProvidersService, provider: ProviderDescriptor) -> int:
    """List models. Returns exit code."""
    try:
        models = await service.fetch_models(provider)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    for model_id in models:
        print(model_id)
    return 0


async def _cmd_chat(
    service: AIProvidersService,
    provider: ProviderDescriptor,
    prompt: str,
    system: Optional[str] = None,
    images: Optional[list[str]] = None,
    show_metrics: bool = False,
) -> int:
    """Stream one completion. Returns exit code."""
    failures: list[Exception] = []

    def on_performance(metrics: Optional[UsageMetrics], error: Optional[Exception]) -> None:
        if not show_metrics:
            return
        if metrics is not None:
            print(f"\n[{_format_metrics(metrics)}]", file=sys.stderr)
        else:
            print(f"\n[metrics unavailable: {error}]", file=sys.stderr)

    def on_data(chunk: str, _text: str) -> None:
        sys.stdout.write(chunk)
        sys.stdout.flush()

    try:
        handler = service.execute(ExecuteRequest(
            provider=provider,
            prompt=prompt,
            system_prompt=system,
            images=images or None,
            on_performance_data=on_performance,
        ))
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    handler.on_data(on_data)
    handler.on_end(lambda _text: sys.stdout.write("\n"))
    handler.on_error(failures.append)

    try:
        await handler.wait()
    except asyncio.CancelledError:
        handler.abort()
        raise

    if failures:
        print(f"Error: {failures[0]}", file=sys.stderr)
        return 1
    return 0


async def _cmd_embed(
    service: AIProvidersService, provider: ProviderDescriptor, texts: list[str]
) -> int:
    """Embed texts and dump the vectors. Returns exit code."""
    try:
        vectors = await service.embed(EmbedRequest(provider=provider, input=texts))
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    json.dump(vectors, sys.stdout)
    sys.stdout.write("\n")
    return 0


async def _cmd_capabilities(
    service: AIProvidersService, provider: ProviderDescriptor, probe: bool = False
) -> int:
    if probe:
        capabilities = await service.detect_model_capabilities(provider)
    else:
        capabilities = service.get_model_capabilities(provider)
    print(capabilities_display_text(capabilities))
    return 0


async def _run(args) -> int:
    service = AIProvidersService(load_settings_from_env())
    try:
        provider = _select_provider(service, args.provider)
        if provider is None:
            if args.provider:
                print(f"Error: unknown provider: {args.provider}", file=sys.stderr)
            else:
                print("Error: no providers configured (set AI_PROVIDER_1_TYPE)", file=sys.stderr)
            return 1

        if args.command == "models":
            return await _cmd_models(service, provider)
        if args.command == "chat":
            return await _cmd_chat(
                service,
                provider,
                args.prompt,
                system=args.system,
                images=args.images,
                show_metrics=args.metrics,
            )
        if args.command == "embed":
            return await _cmd_embed(service, provider, args.texts)
        if args.command == "capabilities":
            return await _cmd_capabilities(service, provider, probe=args.probe)
        return 1
    finally:
        await service.aclose()


# ─────────────────────────────────────────────────────────────────────
# ENTRY POINT
# ─────────────────────────────────────────────────────────────────────


def main(argv: Optional[list[str]] = None):
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Logging
    level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(name)s %(message)s", stream=sys.stderr)

    load_dotenv()

    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
