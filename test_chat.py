"""Manual smoke client: connect as a user, send one message, print frames.

Usage (server running on localhost:8000, users created via POST /users):
    python test_chat.py <userId> <chatId> [lastSeq]
"""
import asyncio
import json
import sys
import uuid

import websockets


async def test(user_id: str, chat_id: str, last_seq: int = 0):
    url = f"ws://localhost:8000/ws?userId={user_id}&lastSeen={chat_id}:{last_seq}"
    async with websockets.connect(url) as ws:
        # connected, catch_up pages, then synced
        while True:
            frame = json.loads(await ws.recv())
            print(f"Received: {frame}")
            if frame["type"] == "synced":
                break

        await ws.send(json.dumps({
            "type": "send",
            "chatId": chat_id,
            "content": "Hello from Python!",
            "clientMessageId": str(uuid.uuid4()),
        }))

        # Own push, then the "sent" confirmation
        for _ in range(2):
            frame = json.loads(await ws.recv())
            print(f"Received: {frame}")
            if frame["type"] == "message":
                await ws.send(json.dumps({"type": "ack", "chatId": chat_id, "seq": frame["seq"]}))

        print(f"Received: {json.loads(await ws.recv())}")


if __name__ == "__main__":
    if len(sys.argv) < 3:
        sys.exit(__doc__)
    asyncio.run(test(sys.argv[1], sys.argv[2], int(sys.argv[3]) if len(sys.argv) > 3 else 0))
