"""
Mission Track - Messages API
============================

Team and mission chat. Encrypted messages are stored as sealed envelopes;
the per-message key is returned to the sender only.
"""

from uuid import UUID

from fastapi import APIRouter, status

from mission_track.api.deps import CurrentIdentity, MessagePage, Orchestrator, Queries
from mission_track.core import encryption
from mission_track.core.schemas import (
    ApiResponse,
    DecryptRequest,
    DecryptResponse,
    MessageCreate,
    MessageResponse,
    MessageStats,
    SentMessageResponse,
)

router = APIRouter(prefix="/messages", tags=["Messages"])


@router.post(
    "",
    response_model=ApiResponse[SentMessageResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Send a message to a team",
)
async def send_message(
    data: MessageCreate,
    identity: CurrentIdentity,
    orchestrator: Orchestrator,
) -> ApiResponse[SentMessageResponse]:
    """
    Send a message, encrypted by default.

    `encryptionKey` in the response is the only copy of the message key
    the server hands out.
    """
    sent = await orchestrator.send_message(
        identity,
        data.team_id,
        data.content,
        mission_id=data.mission_id,
        is_encrypted=data.is_encrypted,
    )
    return ApiResponse(
        data=SentMessageResponse(message=sent.message, encryption_key=sent.encryption_key),
        message="Message sent successfully",
    )


@router.get(
    "/team/{team_id}",
    response_model=ApiResponse[list[MessageResponse]],
    summary="Team chat history, newest first",
)
async def get_team_messages(
    team_id: UUID,
    identity: CurrentIdentity,
    queries: Queries,
    page: MessagePage,
) -> ApiResponse[list[MessageResponse]]:
    messages, pagination = await queries.team_messages(identity, team_id, page.page, page.limit)
    return ApiResponse(data=messages, pagination=pagination)


@router.get(
    "/team/{team_id}/stats",
    response_model=ApiResponse[MessageStats],
    summary="Message statistics for a team",
)
async def get_message_stats(
    team_id: UUID,
    identity: CurrentIdentity,
    queries: Queries,
) -> ApiResponse[MessageStats]:
    return ApiResponse(data=await queries.message_stats(identity, team_id))


@router.get(
    "/mission/{mission_id}",
    response_model=ApiResponse[list[MessageResponse]],
    summary="Messages attached to a mission",
)
async def get_mission_messages(
    mission_id: UUID,
    identity: CurrentIdentity,
    queries: Queries,
    page: MessagePage,
) -> ApiResponse[list[MessageResponse]]:
    messages, pagination = await queries.mission_messages(identity, mission_id, page.page, page.limit)
    return ApiResponse(data=messages, pagination=pagination)


@router.post(
    "/decrypt",
    response_model=ApiResponse[DecryptResponse],
    summary="Decrypt an envelope",
    responses={400: {"description": "Invalid encryption key or corrupted message"}},
)
async def decrypt_message(
    data: DecryptRequest,
    identity: CurrentIdentity,
) -> ApiResponse[DecryptResponse]:
    plaintext = encryption.decrypt(data.encrypted_message)
    return ApiResponse(data=DecryptResponse(decrypted_content=plaintext))


@router.delete(
    "/{message_id}",
    response_model=ApiResponse[None],
    summary="Delete a message",
)
async def delete_message(
    message_id: UUID,
    identity: CurrentIdentity,
    orchestrator: Orchestrator,
) -> ApiResponse[None]:
    await orchestrator.delete_message(identity, message_id)
    return ApiResponse(message="Message deleted successfully")
