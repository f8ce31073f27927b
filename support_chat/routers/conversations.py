from fastapi import APIRouter, Depends, Query, Request, status

from support_chat.config import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from support_chat.database.connection import mongo_db_dependency
from support_chat.repositories.conversation_repository import ConversationRepository
from support_chat.repositories.user_repository import UserRepository
from support_chat.schemas.chat import (
    ConversationOut,
    ConversationPage,
    MarkReadResult,
    MessageOut,
    SendMessageRequest,
    UnreadTotal,
)
from support_chat.schemas.user import CurrentUser
from support_chat.services.chat_service import ChatService
from support_chat.utils.dependencies import get_current_user


router = APIRouter(prefix="/conversations", tags=["chat"])


def get_chat_service(request: Request, db=Depends(mongo_db_dependency)) -> ChatService:
    return ChatService(ConversationRepository(db), UserRepository(db), request.app.state.delivery)


@router.get("/support", response_model=ConversationOut)
async def support_conversation(current_user: CurrentUser = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return await service.get_or_create_support_conversation(current_user)


@router.get("", response_model=ConversationPage)
async def list_conversations(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    current_user: CurrentUser = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return await service.list_conversations(current_user, page=page, size=limit)


@router.get("/unread-count", response_model=UnreadTotal)
async def unread_count(current_user: CurrentUser = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return UnreadTotal(unread_count=await service.get_unread_count(current_user))


@router.get("/{conversation_id}", response_model=ConversationOut)
async def get_conversation(conversation_id: str, current_user: CurrentUser = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return await service.get_conversation(current_user, conversation_id)


@router.post("/{conversation_id}/messages", response_model=MessageOut, status_code=status.HTTP_201_CREATED)
async def send_message(
    conversation_id: str,
    body: SendMessageRequest,
    current_user: CurrentUser = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return await service.send_message(
        current_user,
        conversation_id,
        body.content,
        message_type=body.message_type,
        attachment=body.attachment,
        client_message_id=body.client_message_id,
    )


@router.put("/{conversation_id}/read", response_model=MarkReadResult)
async def mark_read(conversation_id: str, current_user: CurrentUser = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return MarkReadResult(updated=await service.mark_read(current_user, conversation_id))


@router.delete("/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_conversation(conversation_id: str, current_user: CurrentUser = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    await service.delete_conversation(current_user, conversation_id)
