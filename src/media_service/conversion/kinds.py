"""Supported output kinds and request validation.

Adding a kind is a data change: add a ``KindProfile`` to ``KINDS``.
"""

import uuid
from collections.abc import Mapping
from pathlib import Path
from urllib.parse import urlparse

from .errors import InvalidSourceReference, MissingField, UnsupportedKind
from .interfaces import DeliveryMode, JobSpec, KindProfile

KINDS: dict[str, KindProfile] = {
    p.name: p
    for p in (
        KindProfile(
            name="audio",
            args=("-x", "--audio-format", "mp3", "--audio-quality", "0"),
            mime_type="audio/mpeg",
            filename="audio.mp3",
            streamable=False,
        ),
        KindProfile(
            name="video-standard",
            args=("-f", "18"),
            mime_type="video/mp4",
            filename="video_360p.mp4",
        ),
        KindProfile(
            name="video-high",
            args=("-f", "22"),
            mime_type="video/mp4",
            filename="video_720p.mp4",
        ),
    )
}

# Legacy "type" values accepted by earlier clients
ALIASES: dict[str, str] = {
    "mp3": "audio",
    "mp4": "video-standard",
    "360p": "video-standard",
    "720p": "video-high",
}

# Request field name -> legacy field name
FIELDS = {
    "sourceReference": "url",
    "outputKind": "type",
}


def resolve_profile(kind: str) -> KindProfile:
    key = kind.strip().lower()
    key = ALIASES.get(key, key)
    try:
        return KINDS[key]
    except KeyError:
        raise UnsupportedKind(kind, sorted(KINDS)) from None


def _field(raw: Mapping[str, object], name: str) -> str:
    value = raw.get(name)
    if value is None:
        value = raw.get(FIELDS[name])
    if not isinstance(value, str) or not value.strip():
        raise MissingField(name)
    return value.strip()


def _check_reference(reference: str) -> None:
    parsed = urlparse(reference)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise InvalidSourceReference(reference)
    if any(ch.isspace() for ch in reference):
        raise InvalidSourceReference(reference)


def validate(
    raw: Mapping[str, object],
    *,
    delivery_mode: DeliveryMode = DeliveryMode.BUFFERED,
    work_dir: Path | None = None,
) -> JobSpec:
    """Turn a raw request body into an immutable JobSpec.

    Raises a ``ValidationError`` subclass before anything is launched. Kinds
    that cannot be written to stdout are always delivered buffered.
    """
    source = _field(raw, "sourceReference")
    kind = _field(raw, "outputKind")
    _check_reference(source)
    profile = resolve_profile(kind)

    mode = DeliveryMode(delivery_mode)
    if mode is DeliveryMode.DIRECT and not profile.streamable:
        mode = DeliveryMode.BUFFERED

    output_path = None
    if mode is DeliveryMode.BUFFERED:
        base = Path(work_dir) if work_dir is not None else Path(".")
        output_path = base / f"{uuid.uuid4().hex}{profile.suffix}"

    return JobSpec(
        source_reference=source,
        output_kind=profile.name,
        profile=profile,
        delivery_mode=mode,
        output_path=output_path,
    )
