#!/usr/bin/env python3
import argparse
import json
import time
from pathlib import Path

import httpx

POLL_INTERVAL_SECONDS = 3
TERMINAL_STATES = {"completed", "failed"}


def _load_transcript(path: Path, duration_seconds: float) -> dict:
    if path.suffix == ".json":
        payload = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise RuntimeError(f"{path} must contain a JSON object.")
        return payload
    return {"text": path.read_text(encoding="utf-8"), "duration_seconds": duration_seconds, "words": []}


def main() -> None:
    parser = argparse.ArgumentParser(description="Submit an assessment and poll it until it finishes.")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--transcript", help="Plain-text transcript, or a JSON file with text/duration_seconds/words.")
    source.add_argument("--media", help="Audio or video recording to upload for transcription.")
    parser.add_argument("--duration-seconds", type=float, default=60.0, help="Duration for plain-text transcripts.")
    parser.add_argument("--user-id", required=True, help="Value sent as the X-User-Id header.")
    parser.add_argument("--api-base", default="http://127.0.0.1:8000", help="Backend base URL.")
    parser.add_argument("--timeout-seconds", type=int, default=300, help="Polling timeout.")
    args = parser.parse_args()

    headers = {"X-User-Id": args.user_id}
    with httpx.Client(timeout=30.0, trust_env=False, headers=headers) as client:
        if args.media:
            media_path = Path(args.media).expanduser().resolve()
            if not media_path.exists():
                raise FileNotFoundError(f"Media file not found: {media_path}")
            with media_path.open("rb") as media_file:
                files = {"media": (media_path.name, media_file, "application/octet-stream")}
                create_resp = client.post(f"{args.api_base}/api/assessments/upload", files=files)
        else:
            transcript_path = Path(args.transcript).expanduser().resolve()
            body = {"transcript": _load_transcript(transcript_path, args.duration_seconds)}
            create_resp = client.post(f"{args.api_base}/api/assessments", json=body)
        create_resp.raise_for_status()
        assessment_id = create_resp.json()["assessment_id"]
        print(f"created assessment: {assessment_id}")

        started = time.time()
        final_status = None
        while time.time() - started < args.timeout_seconds:
            poll_resp = client.get(f"{args.api_base}/api/assessments/{assessment_id}")
            poll_resp.raise_for_status()
            payload = poll_resp.json()
            print(f"status={payload['status']} progress={payload.get('progress')}")
            if payload["status"] in TERMINAL_STATES:
                final_status = payload
                break
            time.sleep(payload.get("poll_after_seconds") or POLL_INTERVAL_SECONDS)

        if not final_status:
            raise TimeoutError(f"Timed out waiting for assessment: {assessment_id}")
        if final_status["status"] != "completed":
            raise RuntimeError(f"Assessment failed: {final_status.get('error_message')}")

        result_resp = client.get(f"{args.api_base}/api/assessments/{assessment_id}/result")
        result_resp.raise_for_status()
        result = result_resp.json()

    print(f"overall score: {result.get('overall_score')}")
    print(json.dumps(result, indent=2))


if __name__ == "__main__":
    main()
