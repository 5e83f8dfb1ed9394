#!/usr/bin/env python3
"""Push the fixed calendar tool schemas to one assistant."""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from agent_admin.config import MissingConfigurationError
from agent_admin.provisioning import AssistantConflictError, ProvisioningForwarder
from agent_admin.vapi_client import VapiAPIError, VapiClient
from dotenv import load_dotenv

load_dotenv()


def main():
    if len(sys.argv) < 2:
        print("Usage: python scripts/force_tool_update.py <assistant_id>")
        sys.exit(1)

    assistant_id = sys.argv[1]
    try:
        forwarder = ProvisioningForwarder(VapiClient())
        result = forwarder.sync_tool_schemas(assistant_id)
    except AssistantConflictError as e:
        print(f"❌ {e}")
        print("   Someone else is editing this assistant; try again shortly.")
        sys.exit(1)
    except (MissingConfigurationError, VapiAPIError) as e:
        print(f"❌ Tool update failed: {e}")
        sys.exit(1)

    if result.updated_tools:
        print(f"✅ Updated {', '.join(result.updated_tools)} on {assistant_id} "
              f"(attempt {result.attempts})")
    else:
        print(f"✅ Tool schemas on {assistant_id} already current")


if __name__ == "__main__":
    main()
