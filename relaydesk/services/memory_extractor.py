"""
Memory extraction service - asks the LLM which facts in a message are
worth remembering about the contact.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from relaydesk.config import settings
from relaydesk.services.llm_service import get_llm_service

logger = logging.getLogger(__name__)

EXTRACTION_PROMPT = """You are a system that extracts important information from conversations for memory storage.
Analyze the given message and extract any important information about the user that should be remembered for future conversations.

Output a JSON array of objects with these fields:
- content: a brief description of the memory (for search/retrieval)
- memory_data: structured data related to the memory (key-value pairs)

Only extract actual information. If no clear memories should be stored, return an empty array []."""

_JSON_ARRAY = re.compile(r"\[[\s\S]*\]")


@dataclass
class ExtractedMemory:
    """A memory candidate returned by the extractor"""
    content: str
    memory_data: Dict[str, Any] = field(default_factory=dict)


def parse_extraction(text: str) -> List[ExtractedMemory]:
    """Pull the JSON array out of a model reply and keep well-formed items."""
    match = _JSON_ARRAY.search(text or "")
    if not match:
        return []
    try:
        items = json.loads(match.group(0))
    except ValueError as e:
        logger.warning(f"[MEMORY] Could not parse extraction output: {e}")
        return []
    if not isinstance(items, list):
        return []

    memories = []
    for item in items:
        if not isinstance(item, dict):
            continue
        content = item.get("content")
        data = item.get("memory_data")
        if content and data:
            memories.append(ExtractedMemory(
                content=str(content),
                memory_data=data if isinstance(data, dict) else {"value": data},
            ))
    return memories


class MemoryExtractor:
    """Extracts memorable facts from a message via the generation capability."""

    def __init__(self, llm=None, max_tokens: Optional[int] = None):
        self.llm = llm or get_llm_service()
        self.max_tokens = max_tokens or settings.extraction_max_tokens

    async def extract(self, message: str) -> List[ExtractedMemory]:
        if not message or not message.strip():
            return []
        reply = await self.llm.generate(EXTRACTION_PROMPT, message, max_tokens=self.max_tokens)
        memories = parse_extraction(reply)
        logger.debug(f"[MEMORY] Extracted {len(memories)} memory candidates")
        return memories
