"""Turn raw model text into ordered display segments."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
import logging
import re

from .models import LinkKind, LinkSegment, Segment, TextSegment

TextNormalizer = Callable[[str], str]

LOGGER = logging.getLogger(__name__)

_BOLD_RE = re.compile(r"\*\*(.+?)\*\*", re.DOTALL)
_LIST_MARKER_RE = re.compile(r"^\* ", re.MULTILINE)
_PLACEHOLDER_RE = re.compile(
    r"\[(" + "|".join(kind.value for kind in LinkKind) + r"): ([^\]]*)\]"
)
_CODE_LINE_PREFIXES = ("import ", "export ", "```")

# Dual-gender honorific pairs collapsed to their short form, keyed by locale.
DEFAULT_LOCALE_REPLACEMENTS: dict[str, dict[str, str]] = {
    "my": {"ဆရာ/ဆရာမ": "ဆရာ"},
}


def replacement_normalizer(pairs: Mapping[str, str]) -> TextNormalizer:
    """Build a normalizer that applies literal ``old -> new`` replacements."""
    ordered = sorted(pairs.items(), key=lambda item: len(item[0]), reverse=True)

    def _normalize(text: str) -> str:
        for old, new in ordered:
            if old:
                text = text.replace(old, new)
        return text

    return _normalize


class ContentSegmenter:
    """Deterministic text-to-segments transform.

    Applying it to a growing prefix of a streamed reply is safe: the
    already-processed prefix always produces the same leading segments.
    """

    def __init__(
        self,
        normalizers: Iterable[TextNormalizer] | None = None,
        *,
        image_lead_in: str = "",
        drop_code_lines: bool = False,
    ) -> None:
        self._normalizers: list[TextNormalizer] = list(normalizers or [])
        self.image_lead_in = image_lead_in
        self.drop_code_lines = drop_code_lines

    @classmethod
    def for_locale(
        cls,
        locale: str,
        replacements: Mapping[str, Mapping[str, str]] | None = None,
        **kwargs: object,
    ) -> ContentSegmenter:
        """Build a segmenter with the registered replacement pairs of ``locale``."""
        table = DEFAULT_LOCALE_REPLACEMENTS if replacements is None else replacements
        pairs = table.get(locale, {})
        normalizers = [replacement_normalizer(pairs)] if pairs else []
        return cls(normalizers, **kwargs)  # type: ignore[arg-type]

    def register_normalizer(self, normalizer: TextNormalizer) -> None:
        """Add a post-processing hook applied to every text segment."""
        self._normalizers.append(normalizer)

    def clean(self, text: str) -> str:
        """Strip bold and list markers (and optionally code lines)."""
        if self.drop_code_lines:
            text = "\n".join(
                line
                for line in text.split("\n")
                if not line.strip().startswith(_CODE_LINE_PREFIXES)
            )
        text = _BOLD_RE.sub(r"\1", text)
        return _LIST_MARKER_RE.sub("", text)

    def _text(self, text: str) -> TextSegment:
        for normalizer in self._normalizers:
            try:
                text = normalizer(text)
            except Exception:  # noqa: BLE001 - a bad hook must not break rendering.
                LOGGER.warning(
                    "segmenter.normalizer.failed",
                    extra={"event": "segmenter.normalizer.failed"},
                    exc_info=True,
                )
        return TextSegment(text)

    def segment(self, raw: str) -> list[Segment]:
        """Split ``raw`` into text and typed link segments in source order."""
        text = self.clean(raw or "")
        segments: list[Segment] = []
        cursor = 0
        for match in _PLACEHOLDER_RE.finditer(text):
            if match.start() > cursor:
                segments.append(self._text(text[cursor : match.start()]))
            kind = LinkKind(match.group(1))
            if kind is LinkKind.IMAGE and self.image_lead_in:
                segments.append(self._text(self.image_lead_in))
            segments.append(LinkSegment(kind=kind, url=match.group(2).strip()))
            cursor = match.end()
        if cursor < len(text) or not segments:
            segments.append(self._text(text[cursor:]))
        return segments
