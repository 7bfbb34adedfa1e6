"""Example showing how to follow Control Room updates from another process.

Run with ``DIGIWORKER_TRANSPORT=redis`` (and the ``redis`` extra installed)
while an engine built with the same transport executes workflows.
"""

import asyncio

from digiworker import get_transport, load_config


async def main():
    config = load_config()
    transport = get_transport(config=config)
    await transport.connect()

    async for update in transport.subscribe(config.transport.topic):
        print(f"{update.timestamp:%H:%M:%S} {update.workflow_id} {update.type.value}: {update.message}")

    await transport.disconnect()


if __name__ == "__main__":
    asyncio.run(main())
