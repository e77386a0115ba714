"""
Order Text Extraction
=====================
Turns a pasted e-mail or chat message into a customer name and a list
of line items, using Claude or OpenAI.

Any failure (provider error, timeout, malformed JSON, missing fields)
yields None: there is simply no structured data for that text.
"""

import json
import asyncio
import logging
from typing import Dict, List, Any, Optional
from dataclasses import dataclass, field

from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from order import OrderItem


logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT = 15.0
MAX_TEXT_LENGTH = 8000
MAX_TOKENS = 1024


EXTRACTION_PROMPT = """Analyze the following order text and extract the customer name \
and the list of requested articles with their quantities.

Reply with a single JSON object and nothing else, shaped exactly like:
{"customer_name": "<name>", "items": [{"name": "<article>", "quantity": <number>}]}

Order text:
"""


@dataclass
class ExtractedOrder:
    """Structured data read from free text."""
    customer_name: str
    items: List[OrderItem] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customer_name": self.customer_name,
            "items": [item.to_dict() for item in self.items],
        }


def parse_extraction(raw: Optional[str]) -> Optional[ExtractedOrder]:
    """
    Validate the model reply.

    Accepts "customer_name" or "customerName", and tolerates a reply
    wrapped in a markdown code fence.

    Returns:
        ExtractedOrder, or None if the reply does not match the schema
    """
    if not raw:
        return None

    text = raw.strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning(f"Extraction reply is not JSON: {str(e)}")
        return None

    if not isinstance(data, dict):
        return None

    name = data.get("customer_name", data.get("customerName"))
    raw_items = data.get("items")

    if not isinstance(name, str) or not name.strip() or not isinstance(raw_items, list):
        logger.warning("Extraction reply is missing customer_name or items")
        return None

    items = []
    for raw_item in raw_items:
        if not isinstance(raw_item, dict):
            return None

        item_name = raw_item.get("name")
        quantity = raw_item.get("quantity")

        if not isinstance(item_name, str) or not item_name.strip():
            return None
        if isinstance(quantity, bool) or not isinstance(quantity, (int, float)) or quantity <= 0:
            return None

        if isinstance(quantity, float) and quantity.is_integer():
            quantity = int(quantity)
        items.append(OrderItem(name=item_name.strip(), quantity=quantity))

    return ExtractedOrder(customer_name=name.strip(), items=items)


class OrderTextExtractor:
    """LLM-backed extractor (Claude or OpenAI)."""

    def __init__(
        self,
        provider: str = "openai",
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[Any] = None
    ):
        self.provider = provider.lower()
        if self.provider not in ("claude", "openai"):
            raise ValueError(
                f"Unknown LLM provider: {provider}. Use 'claude' or 'openai'"
            )

        self.api_key = api_key
        self.model = model or (
            "claude-sonnet-4-20250514" if self.provider == "claude" else "gpt-4o-mini"
        )
        self.timeout = timeout
        self._client = client

        # Stats
        self.request_count = 0
        self.failure_count = 0

    @classmethod
    def from_config(cls, llm_config) -> "OrderTextExtractor":
        """Build from a config.LLMConfig section."""
        return cls(
            provider=llm_config.provider,
            api_key=llm_config.api_key,
            model=llm_config.model,
            timeout=llm_config.timeout
        )

    @property
    def is_available(self) -> bool:
        return self._client is not None or bool(self.api_key)

    def _get_client(self):
        """Get or create the provider client."""
        if self._client is None:
            if not self.api_key:
                raise RuntimeError(f"No API key configured for {self.provider}")

            if self.provider == "claude":
                self._client = AsyncAnthropic(api_key=self.api_key)
            else:
                self._client = AsyncOpenAI(api_key=self.api_key)

        return self._client

    async def _call_model(self, text: str) -> Optional[str]:
        client = self._get_client()
        prompt = EXTRACTION_PROMPT + text

        if self.provider == "claude":
            response = await client.messages.create(
                model=self.model,
                max_tokens=MAX_TOKENS,
                temperature=0,
                messages=[{"role": "user", "content": prompt}]
            )
            return response.content[0].text

        response = await client.chat.completions.create(
            model=self.model,
            max_tokens=MAX_TOKENS,
            temperature=0,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": "You extract order data as JSON."},
                {"role": "user", "content": prompt}
            ]
        )
        return response.choices[0].message.content

    async def extract(self, text: str) -> Optional[ExtractedOrder]:
        """
        Extract customer name and items from free text.

        Returns:
            ExtractedOrder, or None if nothing usable was extracted
        """
        if not text or not text.strip():
            return None

        if not self.is_available:
            logger.debug("Text extraction disabled (no API key)")
            return None

        self.request_count += 1

        try:
            raw = await asyncio.wait_for(
                self._call_model(text.strip()[:MAX_TEXT_LENGTH]),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            self.failure_count += 1
            logger.error(f"Text extraction timeout after {self.timeout}s")
            return None
        except Exception as e:
            self.failure_count += 1
            logger.error(f"Text extraction error ({self.provider}): {str(e)}")
            return None

        result = parse_extraction(raw)
        if result is None:
            self.failure_count += 1
            return None

        logger.info(
            f"Extracted order for {result.customer_name} ({len(result.items)} items)",
            extra={"provider": self.provider}
        )
        return result

    def get_stats(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model,
            "available": self.is_available,
            "requests": self.request_count,
            "failures": self.failure_count,
        }
