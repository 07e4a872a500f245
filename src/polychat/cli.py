"""
Command-line interface for polychat.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from uuid import uuid4

import structlog

from .config import get_settings

logger = structlog.get_logger()


def configure_logging(level: str = "INFO") -> None:
    """Set up structlog console logging."""
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level.upper())
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=True),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def main() -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="polychat",
        description="polychat - multi-provider chat with tools",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    chat_parser = subparsers.add_parser("chat", help="Send a message and stream the reply")
    chat_parser.add_argument("message", help="The user message")
    chat_parser.add_argument("--provider", default=None, help="LLM provider (default from settings)")
    chat_parser.add_argument("--model", default=None, help="Model identifier")
    chat_parser.add_argument("--conversation", default=None, help="Continue a stored conversation")
    chat_parser.add_argument("--system", default=None, help="System prompt")
    chat_parser.add_argument("--no-tools", action="store_true", help="Disable tool use")
    chat_parser.add_argument("--max-iterations", type=int, default=None, help="Max tool rounds")
    chat_parser.add_argument("--memory", action="store_true", help="Do not persist to the database")

    tools_parser = subparsers.add_parser("tools", help="List available tools")
    tools_parser.add_argument("--reload", action="store_true", help="Force a reload of all tool sources")

    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.add_argument("--check", action="store_true", help="Check configuration validity")
    config_parser.add_argument("--limits", action="store_true", help="Show the context limit table")

    subparsers.add_parser("init", help="Create .env and the data directory")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    configure_logging(get_settings().log_level)

    if args.command == "chat":
        sys.exit(asyncio.run(run_chat(args)))
    elif args.command == "tools":
        asyncio.run(list_tools(args.reload))
    elif args.command == "config":
        show_config(args.check, args.limits)
    elif args.command == "init":
        init_project()
    else:
        parser.print_help()


async def run_chat(args: argparse.Namespace) -> int:
    """Stream one reply to stdout. Returns the process exit code."""
    from .agent.loop import AgenticLoop
    from .llm import create_llm
    from .llm.base import Turn
    from .store import InMemoryConversationStore, create_store

    settings = get_settings()
    llm = create_llm(settings.get_llm_config(args.provider, args.model))

    if args.memory:
        store = InMemoryConversationStore()
    else:
        Path("data").mkdir(exist_ok=True)
        store = await create_store(settings.database_url)

    conversation_id = args.conversation or str(uuid4())
    history = await store.list_turns(conversation_id)
    history.append(Turn.user(args.message))

    loop = AgenticLoop(llm, store=store, settings=settings, max_iterations=args.max_iterations)

    exit_code = 0
    async for event in loop.stream(
        conversation_id,
        history,
        use_tools=not args.no_tools,
        system_prompt=args.system,
    ):
        if event.type == "chunk":
            print(event.content, end="", flush=True)
        elif event.type == "note":
            print(f"\n[note] {event.content}", file=sys.stderr)
        elif event.type == "end":
            print()
            logger.info(
                "Conversation saved",
                conversation_id=event.conversation_id,
                model_calls=event.data.get("modelCalls"),
            )
        elif event.type == "error":
            print(f"\nError: {event.error}", file=sys.stderr)
            exit_code = 1

    return exit_code


async def list_tools(reload: bool) -> None:
    """List the tools in the registry."""
    from .tools import get_tool_registry

    registry = get_tool_registry()
    await registry.load(force_reload=reload)

    definitions = registry.list_definitions()
    if not definitions:
        print("No tools available.")
        return

    print(f"\n{'Name':<30} {'Source':<25} Description")
    print("-" * 90)
    for definition in definitions:
        tool = registry.get(definition.name)
        source = tool.source if tool else ""
        print(f"{definition.name:<30} {source:<25} {definition.description[:60]}")


def show_config(check: bool, limits: bool = False) -> None:
    """Show current configuration."""
    settings = get_settings()

    def mask(value: str) -> str:
        if not value:
            return "(not set)"
        return value[:4] + "..." + value[-4:] if len(value) > 10 else "****"

    print("\n=== polychat Configuration ===\n")

    print("LLM Providers:")
    print(f"  Default: {settings.default_provider}")
    print(f"  Default Model: {settings.default_model}")
    print(f"  Anthropic Key: {mask(settings.anthropic_api_key)}")
    print(f"  OpenAI Key: {mask(settings.openai_api_key)}")
    print(f"  Google Key: {mask(settings.google_api_key)}")
    print(f"  OpenRouter Key: {mask(settings.openrouter_api_key)}")
    print(f"  DeepSeek Key: {mask(settings.deepseek_api_key)}")
    print(f"  xAI Key: {mask(settings.xai_api_key)}")

    print("\nAgentic Loop:")
    print(f"  Max Iterations: {settings.max_iterations}")
    print(f"  Tool Result Ceiling: {settings.tool_result_max_tokens} tokens")
    print(f"  Chunk Timeout: {settings.chunk_timeout_seconds:g}s")
    print(f"  Backend Attempts: {settings.backend_max_attempts}")
    print(f"  Context Retries: {settings.context_max_retries}")

    print("\nContext Budget:")
    print(f"  Default Model Limit: {settings.context_limit_for(settings.default_model)}")
    print(f"  Reserve (response): {settings.reserve_for_response}")
    print(f"  Reserve (system prompt): {settings.reserve_for_system_prompt}")
    print(f"  Reserve (tool definitions): {settings.reserve_for_tool_definitions}")
    print(f"  Safety Buffer: {settings.safety_buffer_tokens}")

    print("\nTools:")
    print(f"  Web Search: {settings.enable_web_search}")
    print(f"  Browser: {settings.enable_browser}")
    print(f"  Tools Directory: {settings.tools_directory or '(none)'}")

    print("\nDatabase:")
    print(f"  URL: {settings.database_url}")

    if limits:
        print("\n=== Context Limits ===\n")
        for model, limit in sorted(settings.context_limits.items()):
            print(f"  {model:<25} {limit:>10}")

    if check:
        print("\n=== Configuration Check ===\n")
        config = settings.get_llm_config()
        if config.api_key:
            print(f"✅ API key set for default provider '{config.provider}'")
        else:
            print(f"❌ No API key for default provider '{config.provider}'")


def init_project() -> None:
    """Create a starter .env and the data directory."""
    env_file = Path(".env")
    data_dir = Path("data")

    data_dir.mkdir(exist_ok=True)

    if not env_file.exists():
        env_content = """# polychat Configuration

# LLM API Keys (set at least one)
ANTHROPIC_API_KEY=
OPENAI_API_KEY=
# GOOGLE_API_KEY=
# OPENROUTER_API_KEY=
# DEEPSEEK_API_KEY=
# XAI_API_KEY=

# Default LLM provider and model
DEFAULT_PROVIDER=anthropic
DEFAULT_MODEL=claude-sonnet-4-20250514

# Agentic loop
# MAX_ITERATIONS=20
# TOOL_RESULT_MAX_TOKENS=2000
# CHUNK_TIMEOUT_SECONDS=30

# Tools
# TAVILY_API_KEY=
# TOOLS_DIRECTORY=./tools

# Database
DATABASE_URL=sqlite+aiosqlite:///./data/polychat.db
"""
        env_file.write_text(env_content)
        print(f"✅ Created {env_file}")
    else:
        print(f"ℹ️  {env_file} already exists")

    print(f"✅ Created {data_dir}")


if __name__ == "__main__":
    main()
