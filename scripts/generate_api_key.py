#!/usr/bin/env python3
"""Issue, list or revoke org-scoped admin API keys."""
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from agent_admin import config
from agent_admin.auth import APIKeyManager, InvalidAPIKeyError
from dotenv import load_dotenv

load_dotenv()

USAGE = """Usage:
  python scripts/generate_api_key.py <org_id> [description]
  python scripts/generate_api_key.py --list <org_id>
  python scripts/generate_api_key.py --revoke <api_key>

Example:
  python scripts/generate_api_key.py org-clinic-downtown 'Admin dashboard key'"""


def revoke(manager: APIKeyManager, api_key: str):
    try:
        manager.deactivate_api_key(api_key)
    except InvalidAPIKeyError as e:
        print(f"❌ {e}")
        sys.exit(1)
    print(f"✅ Key {api_key[:16]}… deactivated")


def list_keys(manager: APIKeyManager, org_id: str):
    keys = manager.list_api_keys(org_id)
    if not keys:
        print(f"No API keys for {org_id}")
        return
    print(f"🔑 {len(keys)} key(s) for {org_id}:")
    for key in keys:
        state = "active" if key.is_active else "revoked"
        label = f" ({key.description})" if key.description else ""
        print(f"  {key.prefix}…  {state:<8} last used {key.last_used:%Y-%m-%d %H:%M}{label}")


def issue(manager: APIKeyManager, org_id: str, description=None):
    api_key = manager.generate_api_key(org_id, description)

    print(f"\n✅ API key issued for {org_id}" + (f" ({description})" if description else ""))
    print(f"\n🔑 {api_key}")
    print("\n⚠️  Only a hash is stored; this is the only time the key is shown.")
    print("\nTry it:")
    print(f"  curl http://localhost:8000/api/agent/{org_id} -H 'X-API-Key: {api_key}'\n")


def main():
    args = sys.argv[1:]
    if not args or (args[0] in ("--list", "--revoke") and len(args) < 2):
        print(USAGE)
        sys.exit(1)

    manager = APIKeyManager(database_url=config.get_database_url())

    if args[0] == "--revoke":
        revoke(manager, args[1])
    elif args[0] == "--list":
        list_keys(manager, args[1])
    else:
        issue(manager, args[0], args[1] if len(args) > 1 else None)


if __name__ == "__main__":
    main()
