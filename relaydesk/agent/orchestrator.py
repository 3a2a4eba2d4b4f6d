"""
Orchestrator — drive one inbound message from arrival to delivered reply.

Pipeline for a message id:
  1. claim the id in the processing set (concurrent triggers collapse here)
  2. resolve the tenant backend for the triggering request
  3. existence check, then full fetch of message + contact
  4. store memories from the message (best effort)
  5. fetch and score the tenant's agents, pick one
  6. resolve the contact's name and memory context
  7. generate a reply (with retry; canned apology if generation fails)
  8. persist the reply as an outgoing message
  9. deliver it (dedup-guarded, with retry; failures don't roll back 8)
 10. mark completed

Every exit path marks the message processed, so a message is never left
"processing" after an error.

Usage:
    from relaydesk.agent.orchestrator import get_orchestrator

    result = get_orchestrator().start_or_get_status(message_id, RequestContext.from_request(request))
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from relaydesk.agent.agent_selector import Agent, AgentSelector
from relaydesk.agent.dedup import DeduplicationService, get_dedup_service
from relaydesk.agent.message_status import (
    MessageState,
    MessageStatus,
    MessageStatusTracker,
    get_status_tracker,
)
from relaydesk.agent.structured_logging import set_request_context
from relaydesk.config import settings
from relaydesk.services.backend import BackendError, DataBackend
from relaydesk.services.credential_resolver import (
    CredentialResolver,
    RequestContext,
    Resolution,
    get_credential_resolver,
)
from relaydesk.services.delivery import DeliveryError, TelegramDelivery
from relaydesk.services.embedding_service import get_embedding_service
from relaydesk.services.llm_service import get_llm_service
from relaydesk.services.memory_extractor import MemoryExtractor
from relaydesk.services.memory_service import MemoryService
from relaydesk.services.message_store import MessageStore
from relaydesk.services.retry import with_retry

logger = logging.getLogger(__name__)

FALLBACK_REPLY = (
    "I'm {agent}, and I'd be happy to help with your request. However, I'm "
    "experiencing some technical difficulties right now. Please try again later "
    "or contact support if this issue persists."
)


class OrchestrationError(Exception):
    """A step failed in a way that ends the run with an ``error`` status."""


@dataclass
class StartResult:
    """Answer to a trigger: whether a run started, and the current status."""
    message_id: str
    status: str
    details: str
    is_new: bool
    processing_stage: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "message_id": self.message_id,
            "status": self.status,
            "details": self.details,
            "is_new": self.is_new,
        }
        if self.processing_stage is not None:
            data["processing_stage"] = self.processing_stage
        return data


def fallback_reply(agent: Agent) -> str:
    return FALLBACK_REPLY.format(agent=agent.name)


def build_prompts(
    agent: Agent, user_name: Optional[str], memory_context: str, content: str
) -> Tuple[str, str]:
    """System prompt (persona, name binding, memory) and user prompt."""
    system_prompt = f"You are {agent.name}"
    if agent.description:
        system_prompt += f", {agent.description}"
    if user_name:
        system_prompt += (
            f"\n\nThe user's name is {user_name}. Always address them by name in your responses."
        )
    if memory_context:
        system_prompt += f"\n\nREMEMBER THE FOLLOWING ABOUT THE USER:\n{memory_context}"

    user_prompt = (
        f"User: {user_name or 'User'}\n"
        f"Message: {content}\n\n"
        "Please respond in a helpful, concise, and friendly manner."
    )
    return system_prompt, user_prompt


class Orchestrator:
    """Coordinates resolver, tracker, dedup, selector, memory, LLM and delivery."""

    def __init__(
        self,
        tracker: Optional[MessageStatusTracker] = None,
        dedup: Optional[DeduplicationService] = None,
        resolver: Optional[CredentialResolver] = None,
        selector: Optional[AgentSelector] = None,
        llm=None,
        embedder=None,
        extractor: Optional[MemoryExtractor] = None,
        delivery_factory: Callable[[DataBackend], Any] = TelegramDelivery,
        max_retries: Optional[int] = None,
        initial_delay: Optional[float] = None,
        sleep: Callable = asyncio.sleep,
        require_agents: Optional[bool] = None,
    ):
        self.tracker = tracker or get_status_tracker()
        self.dedup = dedup or get_dedup_service()
        self._resolver = resolver
        self.selector = selector or AgentSelector()
        self._llm = llm
        self._embedder = embedder
        self._extractor = extractor
        self.delivery_factory = delivery_factory
        self.max_retries = max_retries if max_retries is not None else settings.retry_max_retries
        self.initial_delay = (
            initial_delay if initial_delay is not None else settings.retry_initial_delay_ms / 1000
        )
        self._sleep = sleep
        self.require_agents = (
            require_agents if require_agents is not None else settings.require_agents
        )
        self._tasks: Set[asyncio.Task] = set()

    # Collaborators are created lazily so tests can inject only what they need
    @property
    def resolver(self) -> CredentialResolver:
        if self._resolver is None:
            self._resolver = get_credential_resolver()
        return self._resolver

    @property
    def llm(self):
        if self._llm is None:
            self._llm = get_llm_service()
        return self._llm

    @property
    def embedder(self):
        if self._embedder is None:
            self._embedder = get_embedding_service()
        return self._embedder

    @property
    def extractor(self) -> MemoryExtractor:
        if self._extractor is None:
            self._extractor = MemoryExtractor(llm=self.llm)
        return self._extractor

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    def start_or_get_status(
        self,
        message_id: str,
        context: Optional[RequestContext] = None,
        force_reprocess: bool = False,
    ) -> StartResult:
        """
        Start a background run for ``message_id`` unless one holds it.

        Returns immediately. A second trigger while the first is in flight
        gets the current status and starts nothing.
        """
        if not self.tracker.try_acquire(message_id, force=force_reprocess):
            current = self.tracker.get_status(message_id)
            logger.info(f"[ORCHESTRATOR] {message_id} already processing ({current.status.value})")
            return StartResult(
                message_id=message_id,
                status=current.status.value,
                details="Message already processing",
                is_new=False,
                processing_stage=current.processing_stage.to_dict(),
            )

        task = asyncio.create_task(self.process_message(message_id, context, claimed=True))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return StartResult(
            message_id=message_id,
            status=MessageState.PROCESSING.value,
            details="Message processing started",
            is_new=True,
        )

    def get_status(self, message_id: str) -> MessageStatus:
        return self.tracker.get_status(message_id)

    def list_statuses(self, message_ids: List[str]) -> List[Dict[str, Any]]:
        return self.tracker.list_statuses(message_ids)

    async def drain(self) -> None:
        """Wait for background runs to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def process_message(
        self,
        message_id: str,
        context: Optional[RequestContext] = None,
        *,
        resolution: Optional[Resolution] = None,
        claimed: bool = False,
    ) -> MessageStatus:
        """Run the full pipeline for one message and return its final status."""
        if not claimed and not self.tracker.try_acquire(message_id):
            logger.info(f"[ORCHESTRATOR] {message_id} already processing; returning cached status")
            return self.tracker.get_status(message_id)

        self.tracker.update_status(
            message_id, MessageState.ANALYZING, stage="analyzing", details="Fetching message details..."
        )
        set_request_context(message_id=message_id)
        owns_resolution = resolution is None
        try:
            if resolution is None:
                resolution = await self.resolver.resolve(context or RequestContext())
            set_request_context(tenant=resolution.tenant_id or resolution.mode.value)
            await self._run(message_id, resolution)
        except OrchestrationError as e:
            logger.warning(f"[ORCHESTRATOR] {message_id}: {e}")
            self.tracker.update_status(message_id, MessageState.ERROR, details=str(e))
        except Exception as e:
            logger.exception(f"[ORCHESTRATOR] Unexpected failure processing {message_id}")
            self.tracker.update_status(message_id, MessageState.ERROR, details=f"Error: {e}")
        finally:
            if owns_resolution and resolution is not None:
                await resolution.close()
            self.tracker.mark_as_processed(message_id)
        return self.tracker.get_status(message_id)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run(self, message_id: str, resolution: Resolution) -> None:
        backend = resolution.backend
        memory = MemoryService(backend, embedder=self.embedder, extractor=self.extractor)
        store = MessageStore(
            backend, memory=memory, reuse_window_seconds=settings.reply_reuse_window_seconds
        )

        try:
            exists = await store.message_exists(message_id)
        except BackendError as e:
            raise OrchestrationError(f"Error checking if message exists: {e}") from e
        if not exists:
            raise OrchestrationError(f"Message {message_id} does not exist in database")

        try:
            message = await store.fetch_message(message_id)
        except BackendError as e:
            raise OrchestrationError(f"Error fetching message: {e}") from e
        if not message:
            raise OrchestrationError(f"Message not found with ID: {message_id}")

        content = message.get("content") or ""
        contact_id = message.get("contact_id")
        contact = message.get("contacts") or {}

        self.tracker.update_status(
            message_id, MessageState.ANALYZING, stage="analyzing", details="Analyzing message content..."
        )
        if contact_id:
            await memory.store(content, contact_id, message_id)

        try:
            agents = await store.list_agents()
        except BackendError as e:
            raise OrchestrationError(f"Error fetching agents: {e}") from e
        if not agents and self.require_agents:
            raise OrchestrationError("No suitable agent found for this message")

        scored = self.selector.score(agents, content)
        self.tracker.update_status(
            message_id,
            MessageState.DELEGATING,
            stage="delegating",
            details="Scoring agents for best match...",
            processing_details={"scored_agents": [s.to_dict() for s in scored[:5]]},
        )
        best = self.selector.select(agents, content)
        agent = best.agent
        logger.info(f"[ORCHESTRATOR] {message_id} → agent {agent.name} (score {best.score})")

        self.tracker.update_status(
            message_id,
            MessageState.REPLYING,
            stage="replying",
            details=f"Generating response with agent {agent.name}...",
            agent_name=agent.name,
            agent_description=agent.description,
        )

        user_name, memory_context = await self._prompt_context(memory, contact_id, contact, content)
        system_prompt, user_prompt = build_prompts(agent, user_name, memory_context, content)

        used_fallback = False
        try:
            response_text = await with_retry(
                lambda: self.llm.generate(
                    system_prompt, user_prompt, max_tokens=settings.response_max_tokens
                ),
                max_retries=self.max_retries,
                initial_delay=self.initial_delay,
                label=f"generate reply for {message_id}",
                sleep=self._sleep,
            )
        except Exception as e:
            logger.error(f"[ORCHESTRATOR] Generation failed for {message_id}, using fallback: {e}")
            response_text = fallback_reply(agent)
            used_fallback = True

        if contact_id:
            await self._persist_and_deliver(store, backend, contact_id, contact, response_text)
        else:
            logger.warning(f"[ORCHESTRATOR] {message_id} has no contact; reply not persisted")

        self.tracker.update_status(
            message_id,
            MessageState.COMPLETED,
            stage="completed",
            details=(
                "Response generated with fallback due to error"
                if used_fallback else "Response generated successfully"
            ),
            response=response_text,
        )

    async def _prompt_context(
        self,
        memory: MemoryService,
        contact_id: Optional[str],
        contact: Dict[str, Any],
        content: str,
    ) -> Tuple[Optional[str], str]:
        user_name = None
        memory_context = ""
        if contact_id:
            user_name = await memory.resolve_subject_name(contact_id)
            result = await memory.retrieve(contact_id, content, limit=settings.memory_recall_limit)
            memory_context = memory.format_context(result)
        if not user_name and contact.get("name"):
            user_name = contact["name"].split()[0]
        return user_name, memory_context

    async def _persist_and_deliver(
        self,
        store: MessageStore,
        backend: DataBackend,
        contact_id: str,
        contact: Dict[str, Any],
        text: str,
    ) -> None:
        try:
            reply = await store.insert_outgoing(contact_id, text)
        except BackendError as e:
            logger.error(f"[ORCHESTRATOR] Error saving reply for contact {contact_id}: {e}")
            return
        reply_id = reply.get("id")
        if not reply_id:
            return

        address = contact.get("contact_info")
        if not address:
            logger.warning(f"[ORCHESTRATOR] No contact info for {contact_id}; reply stored but not sent")
            return

        dedup_context = f"messageId:{reply_id}"
        if self.dedup.is_duplicate(contact_id, text, dedup_context):
            logger.info(f"[ORCHESTRATOR] Reply {reply_id} already sent; skipping delivery")
            return

        delivery = self.delivery_factory(backend)
        try:
            delivered = await with_retry(
                lambda: delivery.deliver(address, text),
                max_retries=self.max_retries,
                initial_delay=self.initial_delay,
                label=f"deliver reply {reply_id}",
                sleep=self._sleep,
            )
        except (DeliveryError, BackendError) as e:
            logger.error(f"[ORCHESTRATOR] Delivery failed for reply {reply_id}: {e}")
            delivered = False

        if delivered:
            self.dedup.mark_sent(contact_id, text, dedup_context)
        try:
            await store.mark_delivery(reply_id, delivered)
            if delivered:
                await store.touch_contact(contact_id)
        except BackendError as e:
            logger.warning(f"[ORCHESTRATOR] Could not record delivery state for {reply_id}: {e}")


# ── Singleton ────────────────────────────────────────────
_orchestrator: Optional[Orchestrator] = None


def get_orchestrator() -> Orchestrator:
    """Get the global orchestrator."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = Orchestrator()
    return _orchestrator
