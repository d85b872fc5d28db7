"""Hand finished output to the host in one of three delivery modes."""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from ..errors import ContentRetrievalError, ModeLocked
from ..models.cache import CacheManager
from ..state.presets import SupportsPresetApply, SupportsPresetExport
from .collaborators import ContentRetriever, HostCollaborator
from .events import EventChannel, EventType
from .tokens import find_tokens, strip_braces, substitute

logger = logging.getLogger("council.delivery")


class DeliveryMode(str, Enum):
    SYNTHESIS = "synthesis"
    COMPILATION = "compilation"
    INJECTION = "injection"


class OutputFormat(str, Enum):
    PLAIN = "plain"
    LIST = "list"
    XML = "xml"


class DeliverySlot:
    """Engine-owned hand-off slot the host reads before its own generation.

    ``write`` overwrites, ``take`` reads and clears, ``clear`` empties.
    """

    def __init__(self) -> None:
        self._value: Optional[str] = None

    def write(self, text: str) -> None:
        self._value = text

    def read(self) -> Optional[str]:
        return self._value

    def take(self) -> Optional[str]:
        value, self._value = self._value, None
        return value

    def clear(self) -> None:
        self._value = None

    @property
    def is_empty(self) -> bool:
        return self._value is None


@dataclass
class TokenMapping:
    source_token: str
    rag_pipeline_id: str = ""
    static_value: Optional[str] = None
    max_results: int = 5
    output_format: OutputFormat = OutputFormat.PLAIN
    enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["output_format"] = self.output_format.value
        return data

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "TokenMapping":
        token = strip_braces(str(data.get("source_token", "")))
        if not token:
            raise ValueError("Token mapping needs a source token")
        rag_id = str(data.get("rag_pipeline_id") or "")
        static = data.get("static_value")
        if not rag_id and static is None:
            raise ValueError(f"Token mapping '{token}' needs a retrieval pipeline or a static value")
        return TokenMapping(
            source_token=token,
            rag_pipeline_id=rag_id,
            static_value=None if static is None else str(static),
            max_results=int(data.get("max_results", 5)),
            output_format=OutputFormat(data.get("output_format", OutputFormat.PLAIN.value)),
            enabled=bool(data.get("enabled", True)),
        )


def format_results(token: str, text: str, mapping: TokenMapping) -> str:
    """Trim retrieval text to ``max_results`` blocks and render it."""
    blocks = [b.strip() for b in text.split("\n\n") if b.strip()]
    if mapping.max_results > 0:
        blocks = blocks[: mapping.max_results]
    if mapping.output_format == OutputFormat.LIST:
        return "\n".join(f"- {b}" for b in blocks)
    if mapping.output_format == OutputFormat.XML:
        items = "\n".join(f"  <item>{b}</item>" for b in blocks)
        return f"<{token}>\n{items}\n</{token}>"
    return "\n\n".join(blocks)


class DeliveryAdapter(SupportsPresetExport, SupportsPresetApply):
    """Delivers run output per the active mode and serves injection lookups."""

    preset_key = "delivery"

    def __init__(
        self,
        host: Optional[HostCollaborator] = None,
        retriever: Optional[ContentRetriever] = None,
        events: Optional[EventChannel] = None,
        mode: DeliveryMode = DeliveryMode.SYNTHESIS,
        cache_ttl_seconds: float = 30,
        cache_max_entries: int = 128,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.host = host
        self.retriever = retriever
        self.events = events or EventChannel()
        self.slot = DeliverySlot()
        self.cache = CacheManager(ttl_seconds=cache_ttl_seconds, max_entries=cache_max_entries, clock=clock)
        self.mappings: Dict[str, TokenMapping] = {}
        self._mode = DeliveryMode(mode)
        # Set by the run controller.
        self.lock_check: Callable[[], bool] = lambda: False

    # ------------------------------------------------------------------ #
    # Configuration surface
    # ------------------------------------------------------------------ #
    @property
    def mode(self) -> DeliveryMode:
        return self._mode

    def set_mode(self, mode: DeliveryMode | str) -> DeliveryMode:
        new_mode = DeliveryMode(mode)
        if self.lock_check():
            raise ModeLocked(f"Cannot switch to {new_mode.value} while a run is active")
        if new_mode != self._mode:
            self._mode = new_mode
            self.slot.clear()
            self.events.emit(EventType.MODE_CHANGED, None, mode=new_mode.value)
        return self._mode

    def map_token(self, mapping: TokenMapping | Mapping[str, Any]) -> TokenMapping:
        entry = mapping if isinstance(mapping, TokenMapping) else TokenMapping.from_dict(mapping)
        self.mappings[entry.source_token] = entry
        self.cache.clear()
        return entry

    def unmap_token(self, token: str) -> bool:
        removed = self.mappings.pop(strip_braces(token), None) is not None
        if removed:
            self.cache.clear()
        return removed

    def list_mappings(self) -> List[TokenMapping]:
        return list(self.mappings.values())

    # ------------------------------------------------------------------ #
    # Delivery
    # ------------------------------------------------------------------ #
    async def deliver(self, run_id: str, text: str, metadata: Optional[Mapping[str, Any]] = None) -> bool:
        """Deliver final run output; returns True when something reached the host."""
        if not text or not text.strip():
            logger.warning("Run %s produced no output; nothing delivered", run_id)
            self.events.emit(EventType.DELIVERY_EMPTY, run_id, mode=self._mode.value)
            return False

        meta = {"run_id": run_id, "mode": self._mode.value, **dict(metadata or {})}
        if self._mode == DeliveryMode.SYNTHESIS:
            if self.host is None:
                raise RuntimeError("Synthesis delivery needs a host collaborator")
            await self.host.append_message(text, meta)
        elif self._mode == DeliveryMode.COMPILATION:
            self.slot.write(text)
            if self.host is not None:
                await self.host.provide_generation_prompt(text)
        else:
            # Injection mode works through before_generation, not per run.
            logger.debug("Injection mode: run %s output kept on the run only", run_id)
            return False

        self.events.emit(EventType.DELIVERY_COMPLETED, run_id, mode=self._mode.value, length=len(text))
        return True

    # ------------------------------------------------------------------ #
    # Injection
    # ------------------------------------------------------------------ #
    async def before_generation(self, placeholders: Sequence[str], query_context: str = "") -> Dict[str, str]:
        """Resolve mapped placeholders to content; unmapped ones are left out."""
        substitutions: Dict[str, str] = {}
        for placeholder in placeholders:
            token = strip_braces(placeholder)
            mapping = self.mappings.get(token)
            if mapping is None or not mapping.enabled or token in substitutions:
                continue
            if mapping.static_value is not None and not mapping.rag_pipeline_id:
                substitutions[token] = mapping.static_value
                continue

            key = self.cache.get_cache_key(
                {"token": token, "pipeline": mapping.rag_pipeline_id, "query": query_context}
            )
            cached = self.cache.get(key)
            if cached is not None:
                substitutions[token] = cached
                continue
            try:
                raw = await self._retrieve(mapping.rag_pipeline_id, query_context)
            except ContentRetrievalError as exc:
                logger.warning("Injection for {{%s}} failed: %s", token, exc)
                if mapping.static_value is not None:
                    substitutions[token] = mapping.static_value
                continue
            value = format_results(token, raw, mapping)
            self.cache.set(key, value)
            substitutions[token] = value
        return substitutions

    async def apply_injection(self, prompt: str, query_context: str = "") -> str:
        substitutions = await self.before_generation(find_tokens(prompt), query_context)
        return substitute(prompt, substitutions.get)

    async def _retrieve(self, pipeline_id: str, query_context: str) -> str:
        if self.retriever is None:
            raise ContentRetrievalError("No content retriever configured")
        try:
            return str(await self.retriever.execute_pipeline(pipeline_id, query_context))
        except ContentRetrievalError:
            raise
        except Exception as exc:
            raise ContentRetrievalError(f"Retrieval pipeline '{pipeline_id}' failed: {exc}") from exc

    # ------------------------------------------------------------------ #
    # Preset capability
    # ------------------------------------------------------------------ #
    def export_preset(self) -> Dict[str, Any]:
        return {
            "mode": self._mode.value,
            "token_mappings": [m.to_dict() for m in self.mappings.values()],
        }

    def apply_preset(self, data: Mapping[str, Any], merge: bool = False) -> None:
        if data.get("mode"):
            self.set_mode(data["mode"])
        if not merge:
            self.mappings.clear()
        for raw in data.get("token_mappings", []):
            mapping = TokenMapping.from_dict(raw)
            if merge and mapping.source_token in self.mappings:
                continue
            self.mappings[mapping.source_token] = mapping
        self.cache.clear()
