#!/usr/bin/env python3
"""
Simple streaming client for trying the gateway by hand.

Usage:
    python examples/chat_client.py "Tell me a short joke"
    python examples/chat_client.py "Latest news on fusion?" --model sonar-pro
    python examples/chat_client.py "a cat astronaut" --model bytedance/bagel
"""

import argparse
import asyncio
import json

import httpx

BASE_URL = "http://127.0.0.1:8000"


async def poll_prediction(client: httpx.AsyncClient, prediction_id: str) -> None:
    """Poll an async image job until it finishes."""
    while True:
        response = await client.get(f"{BASE_URL}/api/predictions/{prediction_id}")
        data = response.json()
        if response.status_code != 200:
            print(f"\n❌ Job failed: {data.get('detail')}")
            return
        status = data.get("status")
        print(f"   job {prediction_id}: {status}")
        if status in ("succeeded", "failed", "canceled"):
            print(f"📦 Output: {data.get('output')}")
            return
        await asyncio.sleep(2)


async def chat(message: str, model: str) -> None:
    """Send one message and print the streamed response."""
    print(f"📤 Sending to {model or 'default model'}: {message}")

    async with httpx.AsyncClient(timeout=None) as client:
        async with client.stream(
            "POST", f"{BASE_URL}/api/chat", data={"message": message, "modelName": model}
        ) as response:
            if response.status_code != 200:
                body = await response.aread()
                print(f"❌ Error {response.status_code}: {body.decode()}")
                return

            warnings = response.headers.get("x-gateway-warnings")
            if warnings:
                print(f"⚠️  {warnings}")

            print("📥 Receiving response:")
            prediction_id = None
            async for line in response.aiter_lines():
                if not line.strip():
                    continue
                try:
                    chunk = json.loads(line)
                except json.JSONDecodeError as e:
                    print(f"❌ Failed to parse JSON: {e}")
                    continue

                if "text" in chunk:
                    print(chunk["text"], end="", flush=True)
                if "sourceCitations" in chunk:
                    print(f"\n🔗 Sources: {', '.join(chunk['sourceCitations'])}")
                if "imageBase64" in chunk:
                    print(f"\n🖼️  Image received ({len(chunk['imageBase64'])} base64 chars)")
                if "prediction" in chunk:
                    prediction_id = chunk["prediction"]["id"]

        print("\n\n✅ Stream finished")

        if prediction_id:
            await poll_prediction(client, prediction_id)


def main() -> None:
    parser = argparse.ArgumentParser(description="Streaming gateway client")
    parser.add_argument("message", help="Message to send")
    parser.add_argument("--model", default="", help="Model selector (modelName form field)")
    args = parser.parse_args()
    asyncio.run(chat(args.message, args.model))


if __name__ == "__main__":
    main()
