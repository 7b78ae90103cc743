"""
Assistant bridge: support chat that never interrupts the verification flow
"""
import asyncio
import logging
from typing import List, Optional

from openai import OpenAI

from sentinel.models.models import ChatMessage, FlowPhase, FlowState, Session
from sentinel.utils.helpers import now_ms

log = logging.getLogger(__name__)

OFFLINE_REPLY = "I am currently offline. Please try again later."
EMPTY_REPLY = "I'm having trouble connecting. Please try again."

SYSTEM_PROMPT = """You are IDENTITY AGENT, a helpful support assistant for an identity verification (KYC) app.

Guidelines:
- Keep answers short, friendly, and professional.
- If the user has camera issues, suggest checking browser permissions or lighting.
- If the user asks about security, explain that their data stays on this device.
- Never invent identity documents or document numbers."""


def build_context(session: Optional[Session], flow: FlowState, view: str = "dashboard") -> str:
    """Describe where the user is so the assistant can answer in context."""
    if session is None:
        return "User is not signed in."
    if view != "verification":
        status = "Verified" if session.is_verified else "Unverified"
        return f"User {session.name} is on the dashboard. Verification status: {status}."
    phase = flow.phase
    if phase == FlowPhase.IDLE:
        return "User is about to upload their ID document."
    if phase in (FlowPhase.SCANNING_DOCUMENT, FlowPhase.CAPTURING_BIOMETRIC):
        return "User is taking a selfie for biometric matching."
    if phase == FlowPhase.ANALYZING:
        return "User is waiting for AI analysis."
    if phase == FlowPhase.FAILED:
        return f"User encountered an error: {flow.error}"
    return "User is reviewing their results."


class AssistantService:
    def __init__(self, api_key: Optional[str], model: str = "gpt-4.1-mini"):
        self.api_key = api_key
        self.model = model

    def _complete(self, history: List[ChatMessage], message: str, context: str) -> str:
        transcript = "\n".join(f"{m.role}: {m.text}" for m in history)
        client = OpenAI(api_key=self.api_key)
        response = client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": f"Current User Context: {context}\n\nChat History:\n{transcript}\n\nUser: {message}",
                },
            ],
        )
        return response.choices[0].message.content or ""

    async def reply(self, history: List[ChatMessage], message: str, context: str) -> str:
        """Never raises: any failure becomes a fixed fallback reply."""
        if not self.api_key:
            log.warning("Assistant unavailable: no API key configured")
            return OFFLINE_REPLY
        try:
            text = await asyncio.to_thread(self._complete, history, message, context)
        except Exception as e:
            log.error("Assistant request failed: %s", e)
            return OFFLINE_REPLY
        return text or EMPTY_REPLY


class AssistantBridge:
    """Holds the chat transcript for the current session"""

    def __init__(self, service: AssistantService):
        self.service = service
        self.messages: List[ChatMessage] = []

    async def send(self, message: str, context: str) -> ChatMessage:
        history = list(self.messages)
        self.messages.append(ChatMessage(role="user", text=message, timestamp=now_ms()))
        text = await self.service.reply(history, message, context)
        answer = ChatMessage(role="model", text=text, timestamp=now_ms())
        self.messages.append(answer)
        return answer

    def clear(self):
        self.messages = []
