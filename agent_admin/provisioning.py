"""
Provisioning forwarder.

Turns a BusinessConfig into a VAPI assistant definition and keeps the
remote assistant's calendar tool schemas in line with what the tool-call
webhook expects.

Tool schema sync is a read-modify-write against a resource other callers
may be editing, so every write is guarded: the version read with the
assistant is checked again right before the PATCH and sent as If-Match.
A changed version (or a 412) restarts the cycle from a fresh read.
"""
import copy
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from agent_admin import config
from agent_admin.business_config import BusinessConfig, VapiSettings
from agent_admin.vapi_client import VapiAPIError, VapiClient

logger = logging.getLogger(__name__)

MAX_SYNC_ATTEMPTS = 3

DATE_PARAM = {"type": "string", "description": "Date in YYYY-MM-DD format"}
TIME_PARAM = {"type": "string", "description": "Time in HH:MM format (24-hour)"}

# Parameter definitions pushed by sync_tool_schemas, by function name
TOOL_PARAMETER_OVERRIDES: Dict[str, Dict[str, Any]] = {
    "checkAvailability": {
        "type": "object",
        "properties": {
            "date": DATE_PARAM,
            "time": {"type": "string", "description": "Time in HH:MM format (24-hour) to check"},
        },
        "required": ["date"],
    },
    "findAvailableSlots": {
        "type": "object",
        "properties": {
            "date": DATE_PARAM,
            "duration": {"type": "number", "description": "Appointment duration in minutes (default: 60)"},
        },
        "required": ["date"],
    },
}

CALENDAR_TOOLS: List[Dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "checkAvailability",
            "description": "Check if a specific date and time is available for an appointment",
            "parameters": TOOL_PARAMETER_OVERRIDES["checkAvailability"],
        },
    },
    {
        "type": "function",
        "function": {
            "name": "findAvailableSlots",
            "description": (
                "Find all available appointment slots for a given date. Returns actual times "
                "that can be presented to the user. ALWAYS use this to show available times to the user."
            ),
            "parameters": TOOL_PARAMETER_OVERRIDES["findAvailableSlots"],
        },
    },
    {
        "type": "function",
        "function": {
            "name": "createEvent",
            "description": "Create a calendar appointment after confirming all details with the user",
            "parameters": {
                "type": "object",
                "properties": {
                    "date": DATE_PARAM,
                    "time": TIME_PARAM,
                    "service": {"type": "string", "description": "Type of service"},
                    "customerName": {"type": "string", "description": "Customer name"},
                    "customerEmail": {"type": "string", "description": "Customer email"},
                    "customerPhone": {"type": "string", "description": "Customer phone"},
                },
                "required": ["date", "time", "customerName", "customerEmail", "customerPhone", "service"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "getCurrentDateTime",
            "description": (
                "Get the current date, time, and day of the week. Call this tool immediately if you "
                "need to know 'today' or 'now' to schedule appointments accurately."
            ),
            "parameters": {"type": "object", "properties": {}, "required": []},
        },
    },
]

DATE_CHECK_SECTION = (
    "# DATE CHECK REQUIRED\n"
    "You do not know the current date. To schedule ANY appointment, you MUST first call the "
    "\"getCurrentDateTime\" tool to get the current date and time. Do not guess or assume the date."
)

TITLE_RULE = "TITLE RULE: Always ask the user 'What is this booking for?' to use as the 'service' (event title)."


class AssistantConflictError(Exception):
    """Raised when the remote assistant kept changing under a guarded write."""

    def __init__(self, assistant_id: str, attempts: int):
        super().__init__(
            f"Assistant {assistant_id} was modified concurrently; gave up after {attempts} attempts"
        )
        self.assistant_id = assistant_id
        self.attempts = attempts


class MissingAssistantError(Exception):
    """Raised when a config has no provisioned assistant to sync."""
    pass


@dataclass
class ToolSyncResult:
    assistant: Dict[str, Any]
    updated_tools: List[str] = field(default_factory=list)
    attempts: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "assistant": self.assistant,
            "updatedTools": self.updated_tools,
            "attempts": self.attempts,
        }


def _substitute(text: str, replacements: Dict[str, str]) -> str:
    for placeholder, value in replacements.items():
        text = re.sub(re.escape(placeholder), lambda _: value, text, flags=re.IGNORECASE)
    return text


def _user_context(vapi: VapiSettings) -> str:
    user = vapi.known_user()
    if not any(user.values()):
        return (
            "No specific user information provided yet. You MUST ask the user for their Name, "
            "Email, and Phone before booking the appointment.\n" + TITLE_RULE
        )

    lines = ["Information about the user is already known:"]
    if user["name"]:
        lines.append(f"- Name: {user['name']}")
    if user["email"]:
        lines.append(f"- Email: {user['email']}")
    if user["phone"]:
        lines.append(f"- Phone: {user['phone']}")
    lines.append(
        "CONTACT RULE: If Name, Phone, or Email are missing from this context, politely ask the "
        "user for them before booking. If they are already provided, DO NOT ask for them again, "
        "but pass them directly to the createEvent tool."
    )
    lines.append(TITLE_RULE)
    return "\n".join(lines)


def build_assistant_payload(business: BusinessConfig, app_url: Optional[str] = None) -> Dict[str, Any]:
    """
    Build the VAPI assistant body for a BusinessConfig.

    Calendar tools and the webhook serverUrl are included only when Google
    Calendar is connected; serverUrl also needs a public APP_URL.
    """
    vapi = business.vapi or VapiSettings()
    company = business.business_name
    user_name = vapi.known_user()["name"] or "there"

    replacements = {
        "{{COMPANY_NAME}}": company,
        "{{Company name}}": company,
        "{{ROLE_DESCRIPTION}}": business.metadata.primary_use_case or "Voice AI Support Assistant",
    }
    system_prompt = _substitute(vapi.system_prompt or "", replacements)

    first_message = _substitute(
        vapi.first_message or f"Hello, thank you for calling {company}!",
        {
            **replacements,
            "{{USER_NAME}}": user_name,
            "{{Name}}": user_name,
            "{{User Name}}": user_name,
            "{{First Name}}": user_name.split(" ")[0],
        },
    )

    content = f"{system_prompt}\n\n{DATE_CHECK_SECTION}\n\n# USER CONTEXT\n{_user_context(vapi)}"
    if vapi.knowledge_base:
        content += f"\n\n# KNOWLEDGE BASE / FAQs\n{_substitute(vapi.knowledge_base, replacements)}"

    transcriber_provider = (vapi.transcriber.provider or "deepgram").lower()
    if transcriber_provider == "openai":
        transcriber = {"provider": "openai"}
    else:
        transcriber = {
            "provider": transcriber_provider,
            "model": (vapi.transcriber.model or "nova-2").lower(),
            "language": (vapi.transcriber.language or "en").lower(),
            "smartFormat": True,
            "keywords": [],
        }

    background = vapi.background_sound
    payload: Dict[str, Any] = {
        "name": company,
        "model": {
            "provider": (vapi.provider or "openai").lower(),
            "model": (vapi.model or "gpt-4o-mini").lower(),
            "messages": [{"role": "system", "content": content}],
            "temperature": vapi.temperature,
        },
        "voice": {
            "provider": (vapi.voice_provider or "vapi").lower(),
            "voiceId": vapi.voice_id or "Mia",
        },
        "transcriber": transcriber,
        "backgroundSound": "off" if not background or background == "default" else background,
        "firstMessage": first_message,
    }

    if business.calendar_connected():
        payload["model"]["tools"] = copy.deepcopy(CALENDAR_TOOLS)
        app_url = app_url or config.get_app_url()
        if app_url:
            payload["serverUrl"] = f"{app_url.rstrip('/')}/api/vapi/webhook"
        else:
            logger.warning("APP_URL is not set; the assistant will have no webhook serverUrl")

    return payload


def apply_tool_overrides(model: Dict[str, Any]) -> List[str]:
    """
    Overwrite parameter definitions of known tools in a model, in place.

    Returns:
        Names of the tools whose parameters changed
    """
    updated = []
    for tool in model.get("tools") or []:
        function = tool.get("function") or {}
        name = function.get("name")
        override = TOOL_PARAMETER_OVERRIDES.get(name)
        if override is None:
            continue
        if function.get("parameters") != override:
            function["parameters"] = copy.deepcopy(override)
            updated.append(name)
    return updated


class ProvisioningForwarder:
    """Pushes BusinessConfig-derived definitions to VAPI."""

    def __init__(self, client: VapiClient, store=None):
        self.client = client
        self.store = store

    def provision(
        self,
        business: BusinessConfig,
        org_id: Optional[str] = None,
        agent_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create the assistant, or update it when vapi.assistantId is set.

        When org_id/agent_id are given and a store is attached, a newly
        created assistant's id is merged back into the stored config.
        """
        payload = build_assistant_payload(business)
        assistant_id = business.vapi.assistant_id if business.vapi else None

        if assistant_id:
            logger.info(f"Updating existing assistant {assistant_id}")
            assistant = self.client.update_assistant(assistant_id, payload)
        else:
            logger.info(f"Creating new assistant for {business.business_name}")
            assistant = self.client.create_assistant(payload)

        new_id = assistant.get("id")
        if self.store is not None and org_id and agent_id and new_id and new_id != assistant_id:
            self.store.merge_agent_config(org_id, agent_id, {"vapi": {"assistantId": new_id}})
            logger.info(f"Stored assistant id {new_id} on {org_id}/{agent_id}")

        return assistant

    def sync_tool_schemas(self, assistant_id: str) -> ToolSyncResult:
        """
        Overwrite the calendar tools' parameter schemas on a remote assistant.

        Raises:
            AssistantConflictError: If the assistant changed under every attempt
            VapiAPIError: On any other upstream failure
        """
        for attempt in range(1, MAX_SYNC_ATTEMPTS + 1):
            remote = self.client.get_assistant(assistant_id)
            model = copy.deepcopy(remote.data.get("model") or {})
            updated = apply_tool_overrides(model)

            if not updated:
                logger.info(f"Assistant {assistant_id} tool schemas already current")
                return ToolSyncResult(assistant=remote.data, attempts=attempt)

            if remote.version is None:
                logger.warning(f"Assistant {assistant_id} has no version token; write is unguarded")
            else:
                latest = self.client.get_assistant(assistant_id)
                if latest.version != remote.version:
                    logger.warning(
                        f"Assistant {assistant_id} changed during sync "
                        f"(attempt {attempt}/{MAX_SYNC_ATTEMPTS})"
                    )
                    continue

            try:
                assistant = self.client.update_assistant(
                    assistant_id, {"model": model}, if_match=remote.version
                )
            except VapiAPIError as e:
                if e.status_code == 412:
                    logger.warning(
                        f"Assistant {assistant_id} precondition failed "
                        f"(attempt {attempt}/{MAX_SYNC_ATTEMPTS})"
                    )
                    continue
                raise

            logger.info(f"Synced tool schemas on {assistant_id}: {', '.join(updated)}")
            return ToolSyncResult(assistant=assistant, updated_tools=updated, attempts=attempt)

        raise AssistantConflictError(assistant_id, MAX_SYNC_ATTEMPTS)

    def sync_for_config(self, business: BusinessConfig) -> ToolSyncResult:
        assistant_id = business.vapi.assistant_id if business.vapi else None
        if not assistant_id:
            raise MissingAssistantError("Agent has no provisioned assistant")
        return self.sync_tool_schemas(assistant_id)
