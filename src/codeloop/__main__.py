import asyncio
import signal
import sys

from dotenv import load_dotenv
from loguru import logger

from codeloop.agent import Agent
from codeloop.app_config import load_json_config, parse_app_config, resolve_runtime_env
from codeloop.bootstrap import bootstrap_runtime
from codeloop.errors import StorageCorruptionError


def _install_interrupt_handler(agent: Agent) -> None:
    """Ctrl-C cancels the running turn instead of killing the process."""
    loop = asyncio.get_running_loop()

    def _on_interrupt() -> None:
        if not agent.interrupt():
            print("\n(Type 'exit' or press Ctrl-D to quit)", flush=True)

    try:
        loop.add_signal_handler(signal.SIGINT, _on_interrupt)
    except (NotImplementedError, RuntimeError):
        signal.signal(signal.SIGINT, lambda *_: loop.call_soon_threadsafe(_on_interrupt))


async def main() -> None:
    load_dotenv()

    app = parse_app_config(load_json_config())
    env = resolve_runtime_env(app.provider_name)
    if not env.provider_api_key:
        print(f"{env.provider_env_var} environment variable is required.", file=sys.stderr)
        sys.exit(1)

    try:
        runtime = bootstrap_runtime(app, env)
    except (ValueError, KeyError, StorageCorruptionError) as ex:
        print(f"Startup failed: {ex}", file=sys.stderr)
        sys.exit(1)

    agent = runtime.agent
    session = agent.session

    print("codeloop (type 'exit' to quit, '/help' for commands)")
    print("Tools:")
    for t in runtime.tools:
        print(f"  - {t.name}")
    print(f"Working directory: {session.working_directory}")
    print(f"Model: {app.model} ({app.provider_name})")
    if app.compaction_enabled:
        print(
            f"Compaction: at {app.compression_threshold_ratio:.0%} of context window "
            f"(keep {app.keep_recent_turns} recent turns)"
        )
    print(f"Permissions: {app.permission_mode.value}")
    state = "resumed" if runtime.resumed else "new"
    print(f"Session: {session.session_id} ({state}, {len(session.messages)} messages, store: {runtime.store.directory})")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    _install_interrupt_handler(agent)

    try:
        while True:
            try:
                user_input = await asyncio.to_thread(input, "you> ")
            except EOFError:
                break

            trimmed = user_input.strip()

            if trimmed in ("exit", "quit"):
                break

            if not trimmed:
                continue

            try:
                print()
                await agent.run(trimmed)
                print()
            except Exception as ex:
                logger.exception(f"Unhandled error: {ex}")

            if agent.terminated:
                break
    finally:
        await agent.shutdown()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
