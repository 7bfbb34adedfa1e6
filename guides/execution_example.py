"""Example showing how to run a workflow with the WorkflowEngine.

Uses the decision model from ``config.yaml`` (``decision.model``); set
``GMAIL_ACCESS_TOKEN`` to let the agent actually send the email. Every review
is approved automatically; guidance requests get a canned answer.
"""

import asyncio

from digiworker import WorkflowEngine, get_transport, load_config
from digiworker.contracts import (
    ChatMessage,
    ControlRoomUpdate,
    ControlRoomUpdateType,
    Workflow,
)

WORKFLOW = Workflow.model_validate(
    {
        "id": "welcome-customers",
        "name": "Welcome new customers",
        "status": "active",
        "assignedTo": {"stakeholderName": "Ava"},
        "steps": [
            {"id": "signup", "label": "Customer signs up", "type": "trigger", "order": 1},
            {
                "id": "welcome",
                "label": "Send welcome email",
                "order": 2,
                "requirements": {
                    "requirementsText": "Send a short welcome email to the new customer",
                    "blueprint": {"greenList": ["send email"], "redList": ["delete email"]},
                    "integrations": {"gmail": True},
                },
            },
            {"id": "done", "label": "Done", "type": "end", "order": 3},
        ],
    }
)


async def main():
    config = load_config()
    engine = WorkflowEngine.from_config(config, transport=get_transport(config=config))
    await engine.repository.save_workflow(WORKFLOW)

    finished = asyncio.Event()
    reviews: asyncio.Queue = asyncio.Queue()

    def on_update(update: ControlRoomUpdate) -> None:
        print(f"[{update.digital_worker_name}] {update.type.value}: {update.message}")
        if update.type == ControlRoomUpdateType.REVIEW_NEEDED:
            reviews.put_nowait(update.review_item)
        elif update.type == ControlRoomUpdateType.COMPLETED:
            finished.set()

    engine.subscribe(on_update)
    await engine.start(WORKFLOW.id)

    while not finished.is_set():
        review_task = asyncio.ensure_future(reviews.get())
        done_task = asyncio.ensure_future(finished.wait())
        await asyncio.wait([review_task, done_task], return_when=asyncio.FIRST_COMPLETED)
        done_task.cancel()
        if not review_task.done():
            review_task.cancel()
            break
        review = review_task.result()
        if review.needs_guidance:
            review.chat_history.append(
                ChatMessage(sender="user", text="The customer is jane@example.com")
            )
        await engine.approve(review)

    await engine.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
