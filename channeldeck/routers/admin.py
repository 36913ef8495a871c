"""
Admin endpoints: channel catalog, owners, membership lists and statistics.
All routes require the X-Admin-Key header.
"""
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from channeldeck.errors import ValidationError
from channeldeck.models.user import PlaylistIn, UserIn
from channeldeck.routers.deps import require_admin_key
from channeldeck.services.playlists import PlaylistService, get_playlist_service

router = APIRouter(
    prefix="/api/v1/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin_key)],
)


class M3UImportRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    m3u_content: str = Field("", validation_alias=AliasChoices("m3uContent", "m3u_content"))
    clear_existing: bool = False


class CatalogImportRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    channels: list[dict[str, Any]]
    clear_existing: bool = False


def _channel_ids(payload: dict) -> list[str]:
    channel_ids = payload.get("channelIds")
    if not isinstance(channel_ids, list) or not all(isinstance(cid, str) for cid in channel_ids):
        raise ValidationError("channelIds must be an array")
    return channel_ids


# ==================== CHANNELS ====================

@router.get("/channels")
async def list_channels(
    group: Optional[str] = Query(None, description="Only channels in this group"),
    search: Optional[str] = Query(None, description="Search in channel names"),
    active: Optional[bool] = Query(None, description="Filter by active flag"),
    limit: int = Query(100, ge=1, le=1000),
    skip: int = Query(0, ge=0),
    service: PlaylistService = Depends(get_playlist_service),
):
    """
    List catalog channels in playlist order (group, then order).
    """
    channels = await service.store.find(active=active, group=group, search=search, limit=limit, skip=skip)
    return {
        "success": True,
        "count": len(channels),
        "data": [channel.to_client() for channel in channels],
    }


@router.post("/channels", status_code=201)
async def create_channel(
    payload: dict[str, Any] = Body(...),
    service: PlaylistService = Depends(get_playlist_service),
):
    channel = await service.create_channel(payload)
    return {"success": True, "data": channel.to_client()}


@router.put("/channels/{channel_id}")
async def update_channel(
    channel_id: str,
    payload: dict[str, Any] = Body(...),
    service: PlaylistService = Depends(get_playlist_service),
):
    channel = await service.update_channel(channel_id, payload)
    return {"success": True, "data": channel.to_client()}


@router.delete("/channels/{channel_id}")
async def delete_channel(channel_id: str, service: PlaylistService = Depends(get_playlist_service)):
    await service.delete_channel(channel_id)
    return {"success": True, "message": "Channel deleted"}


@router.delete("/channels")
async def delete_all_channels(service: PlaylistService = Depends(get_playlist_service)):
    deleted = await service.delete_all_channels()
    return {
        "success": True,
        "message": f"Successfully deleted {deleted} channels",
        "deletedCount": deleted,
    }


@router.post("/channels/import-m3u")
async def import_m3u(request: M3UImportRequest, service: PlaylistService = Depends(get_playlist_service)):
    """
    Bulk import channels from M3U text. Existing channel ids are updated in place.
    """
    result = await service.import_m3u(request.m3u_content, request.clear_existing)
    return {
        "success": True,
        "message": f"Successfully imported {result['count']} channels",
        "count": result["count"],
    }


@router.post("/channels/import")
async def import_catalog(request: CatalogImportRequest, service: PlaylistService = Depends(get_playlist_service)):
    """
    Bulk import channels from catalog records (field aliases are accepted).
    """
    result = await service.import_catalog(request.channels, request.clear_existing)
    return {"success": True, **result}


@router.get("/stats")
async def get_stats(service: PlaylistService = Depends(get_playlist_service)):
    """
    Aggregate catalog and user statistics.
    """
    return {"success": True, "data": await service.stats()}


# ==================== USERS ====================

@router.get("/users")
async def list_users(service: PlaylistService = Depends(get_playlist_service)):
    users = await service.store.list_users()
    return {"success": True, "data": [user.to_client() for user in users]}


@router.post("/users", status_code=201)
async def register_user(request: UserIn, service: PlaylistService = Depends(get_playlist_service)):
    """
    Create a user with a freshly generated playlist code.
    """
    user = await service.register_user(request)
    return {"success": True, "data": user.to_client()}


@router.post("/users/{username}/regenerate-code")
async def regenerate_code(username: str, service: PlaylistService = Depends(get_playlist_service)):
    user = await service.regenerate_code(username)
    return {"success": True, "playlistCode": user.playlist_code}


@router.get("/users/{username}/channels")
async def get_user_channels(username: str, service: PlaylistService = Depends(get_playlist_service)):
    channels = await service.get_channels(username)
    return {"success": True, "channels": [channel.to_client() for channel in channels]}


@router.put("/users/{username}/channels")
async def set_user_channels(
    username: str,
    payload: dict[str, Any] = Body(...),
    service: PlaylistService = Depends(get_playlist_service),
):
    count = await service.set_channels(username, _channel_ids(payload))
    return {"success": True, "message": "Channels updated", "count": count}


@router.post("/users/{username}/channels/add")
async def add_user_channels(
    username: str,
    payload: dict[str, Any] = Body(...),
    service: PlaylistService = Depends(get_playlist_service),
):
    added, total = await service.add_channels(username, _channel_ids(payload))
    return {"success": True, "message": f"Added {added} channels", "count": total, "addedCount": added}


@router.post("/users/{username}/channels/remove")
async def remove_user_channels(
    username: str,
    payload: dict[str, Any] = Body(...),
    service: PlaylistService = Depends(get_playlist_service),
):
    removed, total = await service.remove_channels(username, _channel_ids(payload))
    return {"success": True, "message": f"Removed {removed} channels", "count": total, "removedCount": removed}


@router.get("/users/{username}/playlists")
async def list_playlists(username: str, service: PlaylistService = Depends(get_playlist_service)):
    playlists = await service.list_playlists(username)
    return {"success": True, "data": [playlist.to_client() for playlist in playlists]}


@router.post("/users/{username}/playlists", status_code=201)
async def create_playlist(
    username: str,
    request: PlaylistIn,
    service: PlaylistService = Depends(get_playlist_service),
):
    """
    Create a standalone playlist with its own code.
    """
    playlist = await service.create_playlist(username, request)
    return {"success": True, "data": playlist.to_client()}
