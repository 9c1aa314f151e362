import asyncio

from llm_dispatch.dispatcher import Dispatcher
from llm_dispatch.registry import default_registry
from llm_dispatch.types import DispatchTarget, Message, StreamEvent
from llm_dispatch.usage import UsageTracker


async def main() -> None:
    registry = default_registry()
    # Keys come from OPENAI_API_KEY, ANTHROPIC_API_KEY, ... when present.
    registry.load_credentials_from_env()
    registry.set_credential("grok", "DUMMY")

    usage = UsageTracker()
    dispatcher = Dispatcher.from_config(registry, usage=usage)
    messages = [Message(role="user", content="What is 2 + 2?")]
    targets = [
        DispatchTarget(provider_id="openai", model="gpt-4"),
        DispatchTarget(provider_id="anthropic", model="claude-3-haiku-20240307"),
        DispatchTarget(provider_id="grok", model="grok-beta", timeout_s=10),
    ]

    try:
        # Failing targets come back with an error instead of raising.
        for response in await dispatcher.dispatch_batch(messages, targets, user_key="smoke"):
            print(response.model_id, repr(response.response), response.error)

        def sink(event: StreamEvent) -> None:
            print(event.provider_id, repr(event.chunk), event.is_complete, event.error or "")

        await dispatcher.dispatch_streaming(messages, targets, sink, user_key="smoke")
    finally:
        await dispatcher.aclose()

    for provider_id, counter in usage.totals("smoke").items():
        print(provider_id, counter.request_count, counter.tokens_used, round(counter.cost, 6))


if __name__ == "__main__":
    asyncio.run(main())
