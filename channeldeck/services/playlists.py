"""
Playlist distribution: code resolution, ownership scoping and catalog upkeep.

User codes and playlist codes are separate namespaces. ``user_playlist``
only ever resolves against users and ``playlist_m3u`` only against
playlists, so a code from one space never leaks channels from the other.
"""
import logging
from typing import Any, Iterable, Optional

from pydantic import ValidationError as PydanticValidationError

from channeldeck.errors import NotFoundError, ValidationError
from channeldeck.models.channel import Channel, ChannelIn, ChannelUpdate
from channeldeck.models.user import CodeSpace, Playlist, PlaylistIn, User, UserIn
from channeldeck.services import m3u
from channeldeck.services.codes import ALPHABET, CODE_LENGTH, CodeGenerator
from channeldeck.services.store import ChannelStore, get_store

logger = logging.getLogger(__name__)


def normalize_code(code: Optional[str]) -> str:
    """Upper-case a code and check it is exactly 6 symbols from A-Z0-9."""
    normalized = (code or "").strip().upper()
    if len(normalized) != CODE_LENGTH or any(ch not in ALPHABET for ch in normalized):
        raise ValidationError("Invalid playlist code. Code must be 6 characters.")
    return normalized


def _first_error(error: PydanticValidationError) -> str:
    detail = error.errors()[0]
    location = ".".join(str(part) for part in detail.get("loc", ()))
    message = detail.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


class PlaylistService:
    """Resolves codes to playlists and manages what each owner can see."""

    def __init__(self, store: ChannelStore, codes: Optional[CodeGenerator] = None):
        self.store = store
        self.codes = codes or CodeGenerator(store)

    # ==================== PUBLIC, CODE-ADDRESSED ====================

    async def resolve_user(self, code: str) -> User:
        user = await self.store.get_user_by_code(normalize_code(code), active_only=True)
        if user is None:
            raise NotFoundError("Invalid or inactive playlist code")
        return user

    async def user_playlist(self, code: str) -> tuple[User, str]:
        """M3U text for the user owning ``code``; records the fetch as a login."""
        user = await self.resolve_user(code)
        await self.store.touch_login(user.id)
        channels = await self.store.channels_for_user(user)
        return user, m3u.serialize(channels, f"{user.username}'s Playlist")

    async def user_feed(self, code: str) -> dict:
        """JSON variant of ``user_playlist`` for TV apps."""
        user = await self.resolve_user(code)
        await self.store.touch_login(user.id)
        channels = await self.store.channels_for_user(user)
        return {
            "success": True,
            "user": {"username": user.username, "playlistCode": user.playlist_code},
            "count": len(channels),
            "channels": [channel.to_client() for channel in channels],
        }

    async def resolve_playlist(self, code: str) -> Playlist:
        playlist = await self.store.get_playlist_by_code(normalize_code(code))
        if playlist is None:
            raise NotFoundError("Playlist not found")
        return playlist

    async def playlist_m3u(self, code: str) -> tuple[Playlist, str]:
        playlist = await self.resolve_playlist(code)
        channels = await self.store.channels_for_playlist(playlist.id)
        return playlist, m3u.serialize(channels, playlist.name)

    async def playlist_info(self, code: str) -> dict:
        playlist = await self.resolve_playlist(code)
        owner = await self.store.get_user(user_id=playlist.user_id)
        return {
            "code": playlist.playlist_code,
            "name": playlist.name,
            "owner": owner.username if owner else None,
            "channelCount": playlist.channel_count,
            "isPublic": playlist.is_public,
            "createdAt": playlist.created_at.isoformat() if playlist.created_at else None,
            "updatedAt": playlist.updated_at.isoformat() if playlist.updated_at else None,
        }

    async def _visible_count(self, user: User) -> Any:
        if user.is_admin:
            return "All"
        return len(await self.store.user_channel_ids(user.id))

    async def verify_code(self, code: str) -> dict:
        user = await self.store.get_user_by_code(normalize_code(code), active_only=True)
        if user is None:
            return {"success": False, "valid": False, "message": "Invalid or inactive code"}
        return {
            "success": True,
            "valid": True,
            "data": {
                "username": user.username,
                "role": user.role.value,
                "channelsCount": await self._visible_count(user),
            },
        }

    async def pair_device(self, code: str, device_name: Optional[str], device_model: Optional[str]) -> dict:
        user = await self.resolve_user(code)
        user = await self.store.record_pairing(
            user.id, device_name or "Unknown Device", device_model or "Unknown Model"
        )
        logger.info(f"Paired device '{user.last_paired_device}' with {user.username}")
        return {
            "username": user.username,
            "playlistCode": user.playlist_code,
            "channelsCount": await self._visible_count(user),
        }

    # ==================== OWNERS ====================

    async def register_user(self, user: UserIn) -> User:
        created = await self.codes.create_with_unique_code(
            CodeSpace.USER, lambda code: self.store.insert_user(user, code)
        )
        logger.info(f"Registered user {created.username} with code {created.playlist_code}")
        return created

    async def get_user(self, username: str) -> User:
        user = await self.store.get_user(username=username)
        if user is None:
            raise NotFoundError("User not found")
        return user

    async def regenerate_code(self, username: str) -> User:
        user = await self.get_user(username)
        return await self.codes.create_with_unique_code(
            CodeSpace.USER, lambda code: self.store.update_user_code(user.id, code)
        )

    async def create_playlist(self, username: str, playlist: PlaylistIn) -> Playlist:
        user = await self.get_user(username)
        return await self.codes.create_with_unique_code(
            CodeSpace.PLAYLIST, lambda code: self.store.insert_playlist(user.id, playlist, code)
        )

    async def list_playlists(self, username: str) -> list[Playlist]:
        user = await self.get_user(username)
        return await self.store.playlists_for_user(user.id)

    # ==================== MEMBERSHIP ====================

    async def get_channels(self, username: str) -> list[Channel]:
        user = await self.get_user(username)
        return await self.store.find_by_ids(await self.store.user_channel_ids(user.id))

    async def set_channels(self, username: str, channel_ids: list[str]) -> int:
        """Replace the list; every id must name an existing channel."""
        user = await self.get_user(username)
        wanted = list(dict.fromkeys(channel_ids))
        known = {channel.channel_id for channel in await self.store.find_by_ids(wanted)}
        if len(known) != len(wanted):
            raise ValidationError("Some channel IDs are invalid")
        return await self.store.set_user_channels(user.id, wanted)

    async def add_channels(self, username: str, channel_ids: list[str]) -> tuple[int, int]:
        """Append known, not-yet-listed channels. Returns (added, total)."""
        user = await self.get_user(username)
        current = await self.store.user_channel_ids(user.id)
        existing = set(current)
        known = {channel.channel_id for channel in await self.store.find_by_ids(channel_ids)}
        to_add = [cid for cid in dict.fromkeys(channel_ids) if cid in known and cid not in existing]
        total = await self.store.set_user_channels(user.id, current + to_add)
        return len(to_add), total

    async def remove_channels(self, username: str, channel_ids: list[str]) -> tuple[int, int]:
        """Drop channels from the list. Returns (removed, total)."""
        user = await self.get_user(username)
        current = await self.store.user_channel_ids(user.id)
        remove = set(channel_ids)
        kept = [cid for cid in current if cid not in remove]
        total = await self.store.set_user_channels(user.id, kept)
        return len(current) - len(kept), total

    # ==================== CATALOG ====================

    async def create_channel(self, payload: dict) -> Channel:
        try:
            channel = ChannelIn.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(_first_error(e)) from e
        return await self.store.insert_channel(channel)

    async def update_channel(self, channel_id: str, payload: dict) -> Channel:
        try:
            update = ChannelUpdate.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(_first_error(e)) from e
        channel = await self.store.update_channel(channel_id, update.model_dump(exclude_unset=True))
        if channel is None:
            raise NotFoundError("Channel not found")
        return channel

    async def delete_channel(self, channel_id: str):
        if not await self.store.delete_channel(channel_id):
            raise NotFoundError("Channel not found")

    async def delete_all_channels(self) -> int:
        deleted = await self.store.delete_all_channels()
        logger.info(f"Deleted {deleted} channels")
        return deleted

    async def import_catalog(self, items: Iterable[dict], clear_existing: bool = False) -> dict:
        """Import alias-tolerant channel dicts; invalid entries are reported, not fatal."""
        channels, skipped = [], []
        for position, item in enumerate(items):
            try:
                channels.append(ChannelIn.model_validate(item))
            except PydanticValidationError as e:
                skipped.append({"index": position, "error": _first_error(e)})
        return await self._store_import(channels, clear_existing, skipped)

    async def import_m3u(self, content: str, clear_existing: bool = False) -> dict:
        if not content or not content.strip():
            raise ValidationError("M3U content is required")
        return await self._store_import(m3u.parse(content), clear_existing, [])

    async def _store_import(self, channels: list[ChannelIn], clear_existing: bool, skipped: list) -> dict:
        if clear_existing:
            await self.store.delete_all_channels()
        imported = await self.store.upsert_channels(channels)
        logger.info(f"Imported {imported} channels ({len(skipped)} skipped)")
        return {"count": imported, "skipped": skipped}

    async def stats(self) -> dict:
        return {
            "channels": await self.store.channel_stats(),
            "users": await self.store.count_users_by_role(),
        }


# Singleton
_playlist_service: Optional[PlaylistService] = None


async def get_playlist_service() -> PlaylistService:
    """Get or create the playlist service singleton."""
    global _playlist_service
    if _playlist_service is None:
        _playlist_service = PlaylistService(await get_store())
    return _playlist_service
