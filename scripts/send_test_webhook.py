#!/usr/bin/env python3
"""Send a sample tool-calls webhook to a running server and print the answer."""
import sys
import os
import json
from datetime import date, timedelta

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import requests
from agent_admin.http_client import create_http_session
from dotenv import load_dotenv

load_dotenv()


def build_payload(assistant_id, day):
    return {
        "message": {
            "type": "tool-calls",
            "call": {"id": "test-call", "assistantId": assistant_id},
            "toolCalls": [
                {
                    "id": "tc-1",
                    "type": "function",
                    "function": {
                        "name": "findAvailableSlots",
                        "arguments": {"date": day.isoformat(), "duration": 60},
                    },
                }
            ],
        }
    }


def main():
    if len(sys.argv) < 2:
        print("Usage: python scripts/send_test_webhook.py <assistant_id> [server_url]")
        sys.exit(1)

    assistant_id = sys.argv[1]
    base_url = sys.argv[2] if len(sys.argv) > 2 else os.getenv("APP_URL", "http://localhost:8000")
    url = f"{base_url.rstrip('/')}/api/vapi/webhook"
    payload = build_payload(assistant_id, date.today() + timedelta(days=1))

    print(f"📤 POST {url}")
    try:
        response = create_http_session().post(url, json=payload)
    except requests.RequestException as e:
        print(f"❌ Request failed: {e}")
        sys.exit(1)

    print(f"   Status: {response.status_code}")
    try:
        print(json.dumps(response.json(), indent=2))
    except ValueError:
        print(response.text)

    if not response.ok:
        sys.exit(1)
    print("✅ Webhook answered")


if __name__ == "__main__":
    main()
