"""Parser and serializer for the directive string carried in clientState.

A clientState such as ``forward:https://x.example/y;uipath:QueueA`` is a list of
``key:value`` segments separated by ``;``. Each segment is split on its first
``:`` only, so values may themselves contain colons (URLs). Segments without a
colon are ignored. Unknown keys are kept verbatim so a parsed value can be
serialized back without losing anything.
"""

from pydantic import BaseModel, ConfigDict

SEGMENT_SEPARATOR = ";"
KEY_SEPARATOR = ":"

FORWARD = "forward"
PROCESSOR = "processor"
UIPATH = "uipath"
QUEUE = "queue"
DETECT_CHANGES = "detectchanges"
FIELDS = "fields"
MODE = "mode"

RECOGNIZED_KEYS = frozenset({FORWARD, PROCESSOR, UIPATH, QUEUE, DETECT_CHANGES, FIELDS, MODE})

_TRUE_VALUES = frozenset({"true", "1", "yes", "on", "enabled"})
_FALSE_VALUES = frozenset({"false", "0", "no", "off", "disabled"})

FORWARD_MODES = ("simple", "withData")


class Directives(BaseModel):
    """Structured, immutable view of a clientState string."""

    model_config = ConfigDict(frozen=True)

    raw: str = ""
    segments: tuple[tuple[str, str], ...] = ()
    forward: str | None = None
    processor: str | None = None
    queue_requested: bool = False
    uipath_queue: str | None = None
    detect_changes: bool = False
    field_allowlist: tuple[str, ...] = ()
    mode: str = "simple"
    extras: tuple[tuple[str, str], ...] = ()

    @property
    def is_proxy(self) -> bool:
        return bool(self.forward)

    @property
    def wants_queue_dispatch(self) -> bool:
        """True when the directives ask for engine-routed queue processing."""
        return self.queue_requested or self.processor is not None

    def get(self, key: str) -> str | None:
        """Return the first raw value for ``key`` (case-insensitive)."""
        wanted = key.lower()
        for seg_key, value in self.segments:
            if seg_key.lower() == wanted:
                return value
        return None

    def has_token(self, token: str) -> bool:
        """Check whether ``token`` occurs in any segment of the raw string."""
        needle = token.lower()
        return any(
            needle in segment.strip().lower()
            for segment in self.raw.split(SEGMENT_SEPARATOR)
            if segment.strip()
        )

    def serialize(self) -> str:
        return serialize(self)


def _parse_bool(value: str) -> bool | None:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    return None


def _join(segments: list[tuple[str, str]] | tuple[tuple[str, str], ...]) -> str:
    return SEGMENT_SEPARATOR.join(f"{key}{KEY_SEPARATOR}{value}" for key, value in segments)


def parse(raw: str | None) -> Directives:
    """Parse a clientState string. Never raises; empty input yields defaults."""
    if not raw:
        return Directives()

    segments: list[tuple[str, str]] = []
    for segment in raw.split(SEGMENT_SEPARATOR):
        segment = segment.strip()
        if not segment:
            continue
        index = segment.find(KEY_SEPARATOR)
        if index == -1:
            continue
        key = segment[:index].strip()
        if not key:
            continue
        segments.append((key, segment[index + 1:].strip()))

    values: dict[str, str] = {}
    extras: list[tuple[str, str]] = []
    for key, value in segments:
        normalized = key.lower()
        if normalized not in RECOGNIZED_KEYS:
            extras.append((key, value))
            continue
        # first occurrence of a recognized key wins
        values.setdefault(normalized, value)

    queue_requested = False
    uipath_queue = None
    for queue_key in (UIPATH, QUEUE):
        if queue_key not in values:
            continue
        flag = _parse_bool(values[queue_key])
        if flag is None:
            # a literal value names the target queue; an empty one just asks for it
            uipath_queue = values[queue_key] or None
            queue_requested = True
        else:
            queue_requested = flag
        break

    mode = values.get(MODE, "simple")
    if mode not in FORWARD_MODES:
        mode = "simple"

    field_allowlist = tuple(
        name.strip() for name in values.get(FIELDS, "").split(",") if name.strip()
    )

    return Directives(
        raw=raw,
        segments=tuple(segments),
        forward=values.get(FORWARD) or None,
        processor=values.get(PROCESSOR) or None,
        queue_requested=queue_requested,
        uipath_queue=uipath_queue,
        detect_changes=_parse_bool(values.get(DETECT_CHANGES, "")) is True,
        field_allowlist=field_allowlist,
        mode=mode,
        extras=tuple(extras),
    )


def serialize(directives: Directives) -> str:
    """Rebuild a clientState string, unknown keys included, in original order."""
    return _join(directives.segments)
