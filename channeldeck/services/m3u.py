"""
M3U playlist serialization and import.

``serialize`` writes the exact extended-M3U layout TV players expect. It is a
pure formatting stage: callers pass active channels already sorted by
(group, order). ``parse`` is the reverse direction used by catalog imports.
"""
import logging
import re
from typing import Iterable, Optional

from pydantic import ValidationError as PydanticValidationError

from channeldeck.models.channel import Channel, ChannelIn

logger = logging.getLogger(__name__)

HEADER = "#EXTM3U"

# key="value" pairs on an EXTINF line
ATTRIBUTE_PATTERN = re.compile(r'([A-Za-z0-9_-]+)="([^"]*)"')


def _extinf(channel: Channel) -> str:
    attributes = [
        ("tvg-id", channel.channel_id),
        ("tvg-name", channel.tvg_name or channel.channel_name),
        ("tvg-logo", channel.tvg_logo or channel.channel_img),
        ("group-title", channel.channel_group),
    ]
    line = "#EXTINF:-1"
    for key, value in attributes:
        if value:
            line += f' {key}="{value}"'
    return f"{line},{channel.channel_name}"


def serialize(channels: Iterable[Channel], playlist_name: Optional[str] = None) -> str:
    """Render channels as an extended M3U playlist.

    Args:
        channels: Active channels in the order they should appear
        playlist_name: Optional name emitted as a ``#PLAYLIST:`` line

    Returns:
        Playlist text; an empty input still yields a valid header-only playlist
    """
    head = [HEADER]
    if playlist_name:
        head.append(f"#PLAYLIST:{playlist_name}")

    parts = ["\n".join(head) + "\n\n"]
    for channel in channels:
        parts.append(f"{_extinf(channel)}\n{channel.channel_url}\n\n")
    return "".join(parts)


def _parse_extinf(line: str) -> dict:
    attributes = dict(ATTRIBUTE_PATTERN.findall(line))
    # The display name follows the first comma outside the quoted attributes
    remainder = ATTRIBUTE_PATTERN.sub("", line)
    _, sep, name = remainder.partition(",")
    return {
        "tvg_id": attributes.get("tvg-id", ""),
        "tvg_name": attributes.get("tvg-name", ""),
        "tvg_logo": attributes.get("tvg-logo", ""),
        "group": attributes.get("group-title", ""),
        "name": name.strip() if sep else "",
    }


def parse(content: str) -> list[ChannelIn]:
    """Parse M3U text into normalized channel records.

    Entries without a usable URL are skipped; a missing display name falls
    back to ``tvg-name`` and then to ``"Unknown"``.
    """
    channels: list[ChannelIn] = []
    current = None

    for line_number, raw in enumerate(content.splitlines(), start=1):
        line = raw.strip()

        if line.startswith("#EXTINF:"):
            current = _parse_extinf(line)

        elif line and not line.startswith("#") and current is not None:
            try:
                channels.append(ChannelIn(
                    channel_id=current["tvg_id"] or None,
                    channel_name=current["name"] or current["tvg_name"] or "Unknown",
                    channel_url=line,
                    tvg_name=current["tvg_name"],
                    tvg_logo=current["tvg_logo"],
                    channel_img=current["tvg_logo"],
                    channel_group=current["group"],
                    order=len(channels),
                ))
            except PydanticValidationError as e:
                logger.warning(f"Skipping M3U entry on line {line_number}: {e.errors()[0]['msg']}")
            current = None

    logger.info(f"Parsed {len(channels)} channels from M3U content")
    return channels
