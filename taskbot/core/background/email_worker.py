"""EmailWorker — lets the agent triage an inbound email."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from loguru import logger

from taskbot.agent.loop import AgentLoop
from taskbot.agent.tools import make_tools
from taskbot.core.errors import NotFoundError
from taskbot.core.events import EmailReceivedEvent

if TYPE_CHECKING:
    from taskbot.core.runtime import Runtime

_THREAD_DEPTH = 5
_HISTORY_LIMIT = 20

# Tool name → what it means for the activity summary
_TRACKED_TOOLS = {
    "reply_to_email": "replied",
    "create_task_from_email": "created task",
    "link_email_to_project": "linked to project",
    "link_email_to_task": "linked to task",
}


class EmailWorker:
    """Processes ``email/received.process`` events.

    The email becomes a user message in its thread's conversation (one
    conversation per thread, found through ``in_reply_to``). The agent runs
    with the full tool registry plus the email linking tools, and the
    email is marked processed whatever the outcome. A redelivered event for
    a processed email is skipped.
    """

    def __init__(self, runtime: Runtime):
        self.rt = runtime

    async def handle_event(self, data: dict[str, Any]) -> dict[str, Any]:
        event = EmailReceivedEvent.model_validate(data)
        return await self.process(event.email_id, event.agent_id, event.recipient_type)

    async def process(self, email_id: str, agent_id: str, recipient_type: str = "to") -> dict[str, Any]:
        rt = self.rt
        email = rt.db.get_email(email_id, agent_id)
        if email is None:
            raise NotFoundError(f"Email not found: {email_id}")
        if email.get("processed_by_agent"):
            logger.info(f"Email {email_id} already processed, skipping")
            return {
                "email_id": email_id,
                "conversation_id": email.get("conversation_id"),
                "success": True,
                "skipped": True,
                "tools_used": [],
            }

        context = await self.gather_context(email)
        conversation = self._get_or_create_conversation(email)
        rt.db.add_message(
            conversation["id"],
            "user",
            f"From: {email['from_address']}\nTo: {email['to_address'] or 'Unknown'}\n"
            f"Subject: {email['subject'] or '(No subject)'}\n\n{email['body'] or '(No content)'}",
            metadata={
                "email_id": email_id,
                "from_address": email["from_address"],
                "subject": email["subject"],
                "message_id": email["message_id"],
                "in_reply_to": email["in_reply_to"],
            },
            idempotency_key=f"email:{email_id}:message",
        )

        outcome = await self._run_agent(email, conversation["id"], context, recipient_type)

        rt.db.update_email(email_id, {"processed_by_agent": 1})
        actions = [label for name, label in _TRACKED_TOOLS.items() if name in outcome.get("tools_used", [])]
        if outcome["success"]:
            description = f"Agent {', '.join(actions)}" if actions else "Agent reviewed the email"
        else:
            description = f"Agent encountered an error: {outcome['error']}"
        rt.recorder.log(
            agent_id,
            "email_processed",
            f"Processed email from {email['from_address']}",
            description=description,
            source="email",
            status="completed" if outcome["success"] else "failed",
            metadata={
                "email_id": email_id,
                "tools_used": outcome.get("tools_used", []),
                "related_found": len(context["related"]),
                "success": outcome["success"],
            },
            conversation_id=conversation["id"],
        )
        logger.info(f"Email {email_id} processed: {description}")
        return {"email_id": email_id, "conversation_id": conversation["id"], **outcome}

    # ── Context ─────────────────────────────────────────────

    async def gather_context(self, email: dict[str, Any]) -> dict[str, Any]:
        """Thread history (via ``in_reply_to``) and semantically related items."""
        rt = self.rt
        cfg = rt.config.background.email
        thread: list[dict[str, Any]] = []
        parent_id = email.get("in_reply_to")
        while parent_id and len(thread) < _THREAD_DEPTH:
            parent = rt.db.find_email_by_message_id(email["agent_id"], parent_id)
            if parent is None:
                break
            thread.append(parent)
            parent_id = parent.get("in_reply_to")

        related: list[dict[str, Any]] = []
        if rt.embedder is not None:
            text = f"{email['subject'] or ''}\n\n{email['body'] or ''}".strip()
            embedding = await rt.embedder(text) if text else None
            if embedding:
                related = rt.db.search_embeddings(
                    embedding, email["agent_id"],
                    match_count=cfg.match_count, match_threshold=cfg.match_threshold,
                )
        return {"email": email, "thread": list(reversed(thread)), "related": related}

    def _get_or_create_conversation(self, email: dict[str, Any]) -> dict[str, Any]:
        db = self.rt.db
        if email.get("conversation_id"):
            existing = db.get_conversation(email["conversation_id"])
            if existing:
                return existing
        if email.get("in_reply_to"):
            parent = db.find_email_by_message_id(email["agent_id"], email["in_reply_to"])
            if parent and parent.get("conversation_id"):
                existing = db.get_conversation(parent["conversation_id"])
                if existing:
                    db.update_email(email["id"], {"conversation_id": existing["id"]})
                    return existing
        conversation = db.create_conversation(
            email["agent_id"],
            f"Email: {email['subject'] or 'No subject'}",
            channel_type="email",
            idempotency_key=f"email:{email['id']}:conversation",
        )
        db.update_email(email["id"], {"conversation_id": conversation["id"]})
        return conversation

    # ── Agent run ───────────────────────────────────────────

    async def _run_agent(
        self,
        email: dict[str, Any],
        conversation_id: str,
        context: dict[str, Any],
        recipient_type: str,
    ) -> dict[str, Any]:
        rt = self.rt
        agent_id = email["agent_id"]
        ctx = rt.tool_context(agent_id, conversation_id=conversation_id, email_id=email["id"])
        registry = make_tools(ctx)
        system_prompt = (
            rt.context.build(agent_id, channel="email")
            + "\n\n---\n\n"
            + build_email_prompt(context, recipient_type)
        )
        history = [
            {"role": m["role"], "content": m["content"] or ""}
            for m in rt.db.get_messages(conversation_id)[-_HISTORY_LIMIT:]
            if m["role"] in ("user", "assistant")
        ]
        loop = AgentLoop(
            rt.config,
            system_prompt,
            tools=registry.get_all_tools(),
            max_steps=rt.config.background.step_limits.email,
            recorder=rt.recorder,
            agent_id=agent_id,
            conversation_id=conversation_id,
        )
        try:
            result = await loop.run(history)
        except Exception as e:
            logger.error(f"Email agent run failed for {email['id']}: {e}")
            return {"success": False, "error": str(e) or type(e).__name__, "tools_used": []}

        if result.text:
            rt.db.add_message(
                conversation_id, "assistant", result.text,
                idempotency_key=f"email:{email['id']}:reply",
            )
        return {
            "success": not result.text.startswith("Error calling LLM"),
            "error": result.text if result.text.startswith("Error calling LLM") else None,
            "response": result.text,
            "tools_used": [c["name"] for c in result.tool_calls],
        }


def build_email_prompt(context: dict[str, Any], recipient_type: str = "to") -> str:
    """System prompt addition describing the inbound email and what to do with it."""
    email = context["email"]
    lines = [
        "## INCOMING EMAIL CONTEXT",
        "",
        "You're processing an incoming email.",
        "",
        "### Current Email",
        f"**From:** {email['from_address']}",
        f"**Subject:** {email['subject'] or '(No subject)'}",
    ]
    if recipient_type == "cc":
        lines.append(
            "**Recipient Status:** You were CC'd. Only reply if you are asked a direct "
            "question, there is a clear action item for you, or your input adds real value."
        )
    elif recipient_type == "bcc":
        lines.append(
            "**Recipient Status:** You were BCC'd. Do not reply unless it is critical; "
            "the sender intended you to observe."
        )
    else:
        lines.append("**Recipient Status:** You are a direct recipient (TO) of this email.")

    if context.get("thread"):
        lines += ["", "### Email Thread History"]
        for e in context["thread"]:
            preview = (e["body"] or "")[:150]
            lines.append(f"- [{e['direction']}] {e['from_address']}: {e['subject'] or '(No subject)'}")
            if preview:
                lines.append(f"  {preview}")

    related = context.get("related") or []
    for source_type, heading in (("project", "Related Projects"), ("task", "Related Tasks"), ("memory", "Related Memories")):
        items = [r for r in related if r["source_type"] == source_type]
        if not items:
            continue
        lines += ["", f"### {heading}"]
        for r in items:
            status = r["metadata"].get("status", "")
            lines.append(
                f"- **{r['title']}** (ID: `{r['source_id']}`"
                f"{', ' + status if status else ''}, {round(r['similarity'] * 100)}% match)"
            )

    lines += [
        "",
        "## Email Processing Instructions",
        "1. Read the email and thread history carefully.",
        "2. If it resolves an open task above, use update_task_from_email to mark it done.",
        "3. Use link_email_to_project or link_email_to_task if it relates to existing work.",
        "4. Use reply_to_email for responses and create_task_from_email for new action items.",
        "5. Use mark_email_as_read for spam or automated email.",
        "6. Save preferences or context the sender shares with save_to_memory.",
    ]
    return "\n".join(lines)
