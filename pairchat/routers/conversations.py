from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from pairchat.schemas.chat import ConversationOut, DirectConversationCreate, GroupConversationCreate
from pairchat.services.chat_service import ChatService
from pairchat.utils.dependencies import get_chat_service, get_current_user


router = APIRouter(prefix="/conversations", tags=["chat"])


@router.post("/direct", response_model=ConversationOut)
async def open_direct(body: DirectConversationCreate, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return await service.open_direct(current_user["_id"], body.peer_id)


@router.post("/group", response_model=ConversationOut, status_code=status.HTTP_201_CREATED)
async def create_group(body: GroupConversationCreate, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return await service.create_group(current_user["_id"], body.member_ids, body.name)


@router.get("")
async def list_conversations(participant: Optional[str] = None, limit: int = Query(20, ge=1, le=100), cursor: Optional[str] = None, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    if participant and participant != current_user["_id"]:
        raise HTTPException(status_code=403, detail="Can only list your own conversations")
    items, next_cursor = await service.list_conversations(current_user["_id"], limit=limit, cursor=cursor)
    return {"items": items, "next_cursor": next_cursor}


@router.get("/{conversation_id}", response_model=ConversationOut)
async def get_conversation(conversation_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return await service.get_conversation(current_user["_id"], conversation_id)


@router.get("/{conversation_id}/messages")
async def list_messages(conversation_id: str, limit: int = Query(50, ge=1, le=200), cursor: Optional[str] = None, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    messages, next_cursor = await service.get_history(current_user["_id"], conversation_id, limit=limit, cursor=cursor)
    return {"items": messages, "next_cursor": next_cursor}


@router.post("/{conversation_id}/read", status_code=status.HTTP_204_NO_CONTENT)
async def mark_read(conversation_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    await service.mark_read(current_user["_id"], conversation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
