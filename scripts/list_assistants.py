#!/usr/bin/env python3
"""List the assistants on the VAPI account and the tools each one carries."""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from agent_admin.config import MissingConfigurationError
from agent_admin.vapi_client import VapiAPIError, VapiClient
from dotenv import load_dotenv

load_dotenv()


def tool_names(assistant):
    model = assistant.get("model") or {}
    return [
        (tool.get("function") or {}).get("name", "?")
        for tool in model.get("tools") or []
    ]


def main():
    try:
        client = VapiClient()
        assistants = client.list_assistants()
    except (MissingConfigurationError, VapiAPIError) as e:
        print(f"❌ Could not list assistants: {e}")
        sys.exit(1)

    print(f"\n✅ Found {len(assistants)} assistant(s)\n")
    for assistant in assistants:
        print(f"  {assistant.get('id')}  {assistant.get('name', '(unnamed)')}")
        print(f"    serverUrl: {assistant.get('serverUrl') or 'N/A'}")
        names = tool_names(assistant)
        print(f"    tools: {', '.join(names) if names else 'none'}")


if __name__ == "__main__":
    main()
