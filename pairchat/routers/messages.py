from fastapi import APIRouter, Depends, status

from pairchat.schemas.chat import MessageCreate, MessageOut
from pairchat.services.chat_service import ChatService
from pairchat.utils.dependencies import get_chat_service, get_current_user


router = APIRouter(prefix="/messages", tags=["chat"])


@router.post("", response_model=MessageOut, status_code=status.HTTP_201_CREATED)
async def send_message(body: MessageCreate, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return await service.send_message(
        current_user,
        body.content,
        receiver_id=body.receiver_id,
        conversation_id=body.conversation_id,
        client_message_id=body.client_message_id,
    )
