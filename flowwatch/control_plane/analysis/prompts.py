"""Diagnosis prompt construction and reply parsing for the reasoning service."""

from __future__ import annotations

import json
import re
from typing import Any
from urllib.parse import urlsplit

KNOWN_SERVICES: dict[str, str] = {
    "stripe.com": "Stripe API",
    "api.openai.com": "OpenAI API",
    "graph.facebook.com": "Facebook Graph API",
    "api.twitter.com": "Twitter API",
    "api.github.com": "GitHub API",
    "api.slack.com": "Slack API",
    "api.telegram.org": "Telegram Bot API",
    "api.whatsapp.com": "WhatsApp API",
    "api.shopify.com": "Shopify API",
    "api.notion.com": "Notion API",
    "api.airtable.com": "Airtable API",
    "api.hubspot.com": "HubSpot API",
    "api.mailchimp.com": "Mailchimp API",
    "api.sendgrid.com": "SendGrid API",
    "api.twilio.com": "Twilio API",
    "googleapis.com": "Google API",
    "api.zoom.us": "Zoom API",
    "api.calendly.com": "Calendly API",
}

_FENCED_JSON = re.compile(r"```json\s*([\s\S]*?)\s*```")
_BARE_OBJECT = re.compile(r"\{[\s\S]*\}")


def detect_service_from_url(url: str) -> str:
    lowered = (url or "").lower()
    if not lowered:
        return "Unknown Service"
    for domain, name in KNOWN_SERVICES.items():
        if domain in lowered:
            return name
    return urlsplit(lowered).hostname or "Unknown Service"


def extract_json_block(text: str) -> dict[str, Any] | None:
    """Return the first JSON object in a reply (fenced block preferred)."""

    candidates: list[str] = []
    fenced = _FENCED_JSON.search(text or "")
    if fenced:
        candidates.append(fenced.group(1))
    bare = _BARE_OBJECT.search(text or "")
    if bare:
        candidates.append(bare.group(0))
    candidates.append(text or "")
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def build_diagnosis_prompt(payload: dict[str, Any]) -> str:
    parameters = payload.get("node_parameters") or {}
    url = str(parameters.get("url", "")) if isinstance(parameters, dict) else ""
    service = detect_service_from_url(url) if url else "n/a"
    return f"""You are an expert in n8n workflows and HTTP APIs.

## Failure
- **Workflow:** {payload.get("workflow_name") or payload.get("workflow_id", "")}
- **Execution:** {payload.get("execution_id", "")} (mode: {payload.get("mode") or "unknown"})
- **Error message:** {payload.get("error_message", "")}

## Failing node
- **Name:** {payload.get("node_name") or "unknown"}
- **Type:** {payload.get("node_type") or "unknown"}
- **Parameters:** {json.dumps(parameters, indent=2, sort_keys=True, default=str)}

## Service
{service}

## Stack
{payload.get("error_stack") or "n/a"}

## Task
1. Explain exactly why this error happened.
2. Check the {service} documentation if a third-party API is involved.
3. Propose a concrete fix.

Reply with JSON only:
```json
{{
  "analysis": "why the error happened",
  "fix": {{"parameters": {{}}}},
  "explanation": "how to apply the fix"
}}
```"""
