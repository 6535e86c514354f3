"""
Parley CLI - Command-line interface for talking to a model.

Commands:
    parley ask "message"         Run one exchange and print the answer
    parley providers             List registered providers
    parley models [provider]     List models with a known capability profile

Configuration is read from the environment (see
:meth:`parley.config.StaticConfigProvider.from_env`).
"""

import argparse
import json
import logging
import sys
from typing import Optional

from . import __version__
from .adapters import GeminiAdapter, OpenAICompatibleAdapter
from .capabilities import ModelCapabilityRegistry
from .config import ConfigProvider, StaticConfigProvider
from .exceptions import ParleyError
from .orchestrator import ChatOrchestrator, ExchangeOptions
from .registry import ProviderRegistry
from .trace import InMemoryDebugSink, TraceAccumulator


def build_orchestrator(
    config_provider: ConfigProvider,
    debug_sink: Optional[InMemoryDebugSink] = None,
    system_prompt: Optional[str] = None,
) -> ChatOrchestrator:
    """Wire the bundled adapters, an empty tool registry and a tracer."""
    capabilities = ModelCapabilityRegistry()
    registry = ProviderRegistry(
        [
            GeminiAdapter(config_provider, capabilities=capabilities),
            OpenAICompatibleAdapter(config_provider, capabilities=capabilities),
        ],
        config_provider=config_provider,
    )
    observers = [TraceAccumulator(debug_sink)] if debug_sink is not None else []
    return ChatOrchestrator(
        registry,
        None,
        config_provider,
        observers=observers,
        system_prompt=system_prompt,
    )


def cmd_ask(args: argparse.Namespace) -> int:
    """Run one exchange."""
    config = StaticConfigProvider.from_env()
    if args.provider:
        config.provider = args.provider
    if args.model:
        config.model = args.model
    if args.no_stream:
        config.streaming_enabled = False

    sink = InMemoryDebugSink()
    orchestrator = build_orchestrator(config, sink, system_prompt=args.system)

    def on_status(message: str, step: str) -> None:
        if not args.quiet:
            print(f"[{step}] {message}", file=sys.stderr)

    def on_token(text: str) -> None:
        print(text, end="", flush=True)

    try:
        result = orchestrator.ask(
            args.message,
            ExchangeOptions(debug=True if args.debug else None),
            on_status_update=on_status,
            on_token=None if args.no_stream else on_token,
        )
    except ParleyError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        orchestrator.registry.close()

    if args.no_stream:
        print(result.answer)
    else:
        print()

    if args.debug and result.debug_id:
        entry = sink.get(result.debug_id)
        print(json.dumps(entry, indent=2, ensure_ascii=False, default=str), file=sys.stderr)
    elif not args.quiet:
        usage = result.usage
        print(
            f"[{result.model}] {usage.prompt_tokens} prompt / "
            f"{usage.completion_tokens} completion tokens",
            file=sys.stderr,
        )
    return 0


def cmd_providers(args: argparse.Namespace) -> int:
    """List registered providers."""
    config = StaticConfigProvider.from_env()
    orchestrator = build_orchestrator(config)
    active = config.get_active_provider_name()
    for name in orchestrator.registry.available_providers():
        marker = "*" if name == active else " "
        print(f"{marker} {name}")
    return 0


def cmd_models(args: argparse.Namespace) -> int:
    """List models with a known capability profile."""
    registry = ModelCapabilityRegistry(paths=args.profiles or None)
    models = (
        registry.models_for_provider(args.provider) if args.provider else registry.known_models()
    )
    for model in models:
        caps = registry.get_capabilities(model)
        flags = [
            name
            for name in ("thinking", "top_k", "safety_settings", "function_calling", "streaming")
            if caps.supports(name)
        ]
        print(f"{model:<24} {caps.provider:<10} {', '.join(flags)}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="parley",
        description="Parley CLI - Multi-provider LLM conversations",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    ask_parser = subparsers.add_parser("ask", help="Send a message and print the answer")
    ask_parser.add_argument("message", help="Message to send")
    ask_parser.add_argument("--provider", "-p", help="Provider name (default: $PARLEY_PROVIDER)")
    ask_parser.add_argument("--model", "-m", help="Model name (default: $PARLEY_MODEL)")
    ask_parser.add_argument("--system", "-s", help="System prompt")
    ask_parser.add_argument(
        "--no-stream",
        action="store_true",
        help="Use a synchronous request instead of streaming",
    )
    ask_parser.add_argument(
        "--debug",
        action="store_true",
        help="Print the full exchange trace to stderr",
    )
    ask_parser.add_argument(
        "--quiet",
        "-q",
        action="store_true",
        help="Suppress status and usage output",
    )
    ask_parser.set_defaults(func=cmd_ask)

    providers_parser = subparsers.add_parser("providers", help="List registered providers")
    providers_parser.set_defaults(func=cmd_providers)

    models_parser = subparsers.add_parser("models", help="List known model profiles")
    models_parser.add_argument("provider", nargs="?", help="Only list this provider's models")
    models_parser.add_argument(
        "--profiles",
        action="append",
        help="Extra YAML capability file (repeatable)",
    )
    models_parser.set_defaults(func=cmd_models)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
