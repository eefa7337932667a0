#!/usr/bin/env python3
"""
Send With Attachment

Uploads a local file, asks the model about it, then lets the queue save
and title the conversation. Everything goes through the outbox, so an
interrupted run picks up where it left off the next time it starts.

Environment:
- OPENWEBUI_URL: Server base URL (default http://localhost:8080)
- OPENWEBUI_TOKEN: API key
- OPENWEBUI_MODEL: Model id to chat with

Demonstrates:
- Upload followed by a message in the same conversation (ordered by thread)
- Persisting the queue to SQLite across runs
- Callbacks for progress output
"""

import asyncio
import os
import sys
from pathlib import Path

import outbox

BASE_URL = os.environ.get("OPENWEBUI_URL", "http://localhost:8080")
TOKEN = os.environ.get("OPENWEBUI_TOKEN")
MODEL = os.environ.get("OPENWEBUI_MODEL", "llama3")
DB_PATH = "outbox.db"


def main():
    if len(sys.argv) < 2:
        print(f"usage: {sys.argv[0]} FILE [QUESTION]")
        sys.exit(2)

    file_path = Path(sys.argv[1]).resolve()
    question = sys.argv[2] if len(sys.argv) > 2 else f"What is in {file_path.name}?"

    async def run():
        print("\n📨 Send With Attachment")
        print(f"   Server: {BASE_URL}, model: {MODEL}\n")

        state = outbox.ChatState(selected_model=MODEL)
        store = outbox.SqliteStore(DB_PATH)

        async with outbox.OpenWebUIClient(BASE_URL, token=TOKEN) as client:
            worker = outbox.TaskWorker(
                state,
                api=client,
                sender=outbox.ChatPipeline(client, state),
            )
            queue = outbox.TaskQueue(store, worker)

            @queue.on_start
            def on_start(task):
                print(f"  ▶ {task.kind.value}", flush=True)

            @queue.on_complete
            def on_complete(task, duration):
                print(f"  ✓ {task.kind.value} ({duration:.1f}s)", flush=True)

            @queue.on_failure
            def on_failure(task, error):
                print(f"  ✗ {task.kind.value} failed: {error}", flush=True)

            # Resume anything left over from an earlier run
            await queue.start()

            # All tasks share the "new" thread, so they run in this order
            await queue.enqueue_upload_media(
                None, str(file_path), file_path.name, file_size=file_path.stat().st_size
            )

            # Wait for the upload so the message can reference its file id
            while not any(t.status.is_terminal for t in queue.list(kind=outbox.TaskKind.UPLOAD_MEDIA)):
                await asyncio.sleep(0.1)

            attachment = state.attachments.get(str(file_path))
            file_ids = [attachment.file_id] if attachment and attachment.file_id else []
            await queue.enqueue_send_text(None, question, attachments=file_ids)

            while queue.list(status=outbox.TaskStatus.QUEUED) or queue.list(status=outbox.TaskStatus.RUNNING):
                await asyncio.sleep(0.1)

            conversation = state.active_conversation
            if conversation is not None:
                await queue.enqueue_save_conversation(conversation.id)
                await queue.enqueue_generate_title(conversation.id)

            while queue.list(status=outbox.TaskStatus.QUEUED) or queue.list(status=outbox.TaskStatus.RUNNING):
                await asyncio.sleep(0.1)

            await queue.stop()

        await store.close()

        if state.messages:
            print(f"\n{state.messages[-1].content}")
        if state.active_conversation is not None:
            print(f"\n✓ Done! Conversation: {state.active_conversation.title}")

    asyncio.run(run())


if __name__ == "__main__":
    main()
