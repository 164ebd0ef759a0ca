import asyncio
import os
import signal
from uuid import uuid4

from dotenv import load_dotenv
from loguru import logger

from omnitrix_agent.app_config import load_config
from omnitrix_agent.bootstrap import bootstrap_runtime
from omnitrix_agent.errors import AgentError

_LINE_PREFIX = "assistant> "


async def _stream_reply(runtime, session_id: str, user_text: str) -> None:
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.set)
    except NotImplementedError:
        pass

    try:
        stream = await runtime.agent.stream_converse(session_id, user_text, cancel=cancel)
        print(_LINE_PREFIX, end="", flush=True)
        async with stream:
            async for delta in stream:
                print(delta, end="", flush=True)
        if stream.cancelled:
            print("\n[cancelled]", end="")
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass


async def main() -> None:
    load_dotenv()

    app = load_config(os.getcwd())
    runtime = bootstrap_runtime(app)
    session_id = str(uuid4())

    print("omnitrix-agent (type 'exit' to quit)")
    print(f"Provider: {runtime.provider.name} ({runtime.provider.model_id})")
    print("Tools:")
    for name in runtime.registry.names():
        print(f"  - {name}")
    print(f"Working directory: {app.work_dir}")
    print(f"Session: {session_id}")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    try:
        while True:
            try:
                user_input = input("you> ")
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()

            if trimmed in ("exit", "quit"):
                break

            if not trimmed:
                continue

            try:
                await _stream_reply(runtime, session_id, trimmed)
                print("\n")
            except AgentError as ex:
                logger.error(f"Turn failed: {ex}")
                print(f"\n[error] {ex}\n")
    finally:
        await runtime.aclose()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
