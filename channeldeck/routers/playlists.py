"""
Public, code-addressed playlist endpoints used by TV apps and players.

No authentication: the 6-character code is the credential. M3U endpoints
report failures as M3U comments so players never choke on a JSON body.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse, Response
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from channeldeck.config import get_settings
from channeldeck.errors import NotFoundError, StorageError, ValidationError
from channeldeck.ratelimit import limiter, public_limit
from channeldeck.services.playlists import PlaylistService, get_playlist_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["playlists"])

M3U_MEDIA_TYPE = "audio/x-mpegurl"


class PairRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    code: str
    device_name: Optional[str] = None
    device_model: Optional[str] = None


def m3u_error(status_code: int, message: str) -> PlainTextResponse:
    return PlainTextResponse(
        f"#EXTM3U\n#ERROR:{message}", status_code=status_code, media_type=M3U_MEDIA_TYPE
    )


def m3u_response(content: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type=M3U_MEDIA_TYPE,
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Cache-Control": f"public, max-age={get_settings().playlist_cache_seconds}",
        },
    )


async def _render(fetch, code: str):
    """Run a playlist lookup, mapping failures to M3U error bodies."""
    try:
        return await fetch(code)
    except ValidationError:
        return m3u_error(400, "Invalid playlist code format")
    except NotFoundError:
        return m3u_error(404, "Playlist not found")
    except StorageError as e:
        logger.error(f"Playlist lookup for {code!r} failed: {e.message}")
        return m3u_error(500, "Internal server error")


# The .m3u route must be registered before the bare code route below
@router.get("/playlist/{code}.m3u")
@limiter.limit(public_limit)
async def get_playlist_m3u(
    code: str,
    request: Request,
    service: PlaylistService = Depends(get_playlist_service),
):
    """
    M3U content of a standalone playlist, by its playlist code.
    """
    outcome = await _render(service.playlist_m3u, code)
    if isinstance(outcome, Response):
        return outcome
    playlist, content = outcome
    return m3u_response(content, f"{playlist.playlist_code}.m3u")


@router.get("/playlist/{code}")
async def get_playlist_info(code: str, service: PlaylistService = Depends(get_playlist_service)):
    """
    Summary of a standalone playlist, by its playlist code.
    """
    return {"success": True, "playlist": await service.playlist_info(code)}


@router.get("/tv/playlist/{code}")
@limiter.limit(public_limit)
async def get_user_playlist(
    code: str,
    request: Request,
    service: PlaylistService = Depends(get_playlist_service),
):
    """
    M3U content of a user's channel list (TV app endpoint).
    Admins get every active channel.
    """
    outcome = await _render(service.user_playlist, code)
    if isinstance(outcome, Response):
        return outcome
    user, content = outcome
    return m3u_response(content, f"{user.username}-playlist.m3u")


@router.get("/tv/playlist/{code}/json")
async def get_user_playlist_json(code: str, service: PlaylistService = Depends(get_playlist_service)):
    """
    JSON variant of the user playlist for TV apps.
    """
    return await service.user_feed(code)


@router.post("/tv/pair")
async def pair_device(request: PairRequest, service: PlaylistService = Depends(get_playlist_service)):
    """
    Pair a device with the user owning the code.
    """
    data = await service.pair_device(request.code, request.device_name, request.device_model)
    return {"success": True, "message": "Device paired successfully", "data": data}


@router.get("/tv/verify/{code}")
async def verify_code(code: str, service: PlaylistService = Depends(get_playlist_service)):
    """
    Check whether a code is valid without pairing.
    """
    return await service.verify_code(code)
