"""Send pre-split audio chunks to the gateway and print what comes back.

Usage: python ws_client.py part1.mp3 [part2.mp3 ...] [--model NAME] [--language CODE]
"""

import argparse
import asyncio
import json
import os
import uuid

import websockets


async def stream(paths, uri, model=None, language=None, chunk_duration_s=0.0):
    stream_id = f"cli-{uuid.uuid4().hex[:8]}"
    async with websockets.connect(uri, close_timeout=2, max_size=None) as ws:
        await ws.send(json.dumps({
            "type": "start",
            "stream_id": stream_id,
            "filename": os.path.basename(paths[0]),
            "model": model,
            "language": language,
            "chunks": [
                {"filename": os.path.basename(p), "estimated_duration_s": chunk_duration_s}
                for p in paths
            ],
        }))
        print(f"Sent start ({len(paths)} chunks)")

        for i, path in enumerate(paths):
            with open(path, "rb") as f:
                await ws.send(f.read())
            print(f"Sent chunk {i + 1}/{len(paths)}: {path}")

        await ws.send(json.dumps({"type": "end", "stream_id": stream_id}))
        print("Sent end, waiting...\n")

        async for msg in ws:
            resp = json.loads(msg)
            if resp.get("type") == "progress":
                p = resp["progress"]
                print(f"[{p['stage']:>12}] {p['percent']:5.1f}% {p['message']}")
                continue
            print(json.dumps(resp, indent=2))
            if resp.get("type") in ("transcript_complete", "error"):
                break

    print("\nDone.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("paths", nargs="+")
    parser.add_argument("--uri", default="ws://localhost:8000/transcribe")
    parser.add_argument("--model")
    parser.add_argument("--language")
    parser.add_argument("--chunk-duration", type=float, default=0.0)
    args = parser.parse_args()
    try:
        asyncio.run(stream(args.paths, args.uri, args.model, args.language, args.chunk_duration))
    except websockets.exceptions.ConnectionClosedError:
        pass
