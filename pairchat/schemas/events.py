"""Websocket event contracts.

Inbound frames are JSON objects discriminated on ``type``; anything else is
rejected with an ``error`` event. Outbound frames are
``{"event": <OutboundEvent>, "data": {...}}``.
"""
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class InboundEvent(BaseModel):

    model_config = ConfigDict(populate_by_name=True)


class JoinEvent(InboundEvent):

    type: Literal["join"]
    user_id: str = Field(alias="userId", min_length=1)


class StartAnonymousEvent(InboundEvent):

    type: Literal["startAnonymous"]


class StopAnonymousEvent(InboundEvent):

    type: Literal["stopAnonymous"]


class RelayAnonymousEvent(InboundEvent):

    type: Literal["relayAnonymous"]
    room_id: str = Field(alias="roomId")
    content: str


class SendMessageEvent(InboundEvent):

    type: Literal["sendMessage"]
    receiver_id: Optional[str] = Field(default=None, alias="receiverId")
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    content: str
    client_message_id: Optional[str] = Field(default=None, alias="clientMessageId", max_length=128)


class TypingEvent(InboundEvent):

    type: Literal["typing"]
    receiver_id: Optional[str] = Field(default=None, alias="receiverId")
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    is_typing: bool = Field(default=True, alias="isTyping")


Inbound = Annotated[
    Union[
        JoinEvent,
        StartAnonymousEvent,
        StopAnonymousEvent,
        RelayAnonymousEvent,
        SendMessageEvent,
        TypingEvent,
    ],
    Field(discriminator="type"),
]

inbound_adapter: TypeAdapter = TypeAdapter(Inbound)


class OutboundEvent(str, Enum):

    CONNECTED = "connected"
    JOINED = "joined"
    MESSAGE_RECEIVED = "messageReceived"
    MESSAGE_SENT = "messageSent"
    TYPING = "typing"
    ANONYMOUS_SEARCHING = "anonymousSearching"
    ANONYMOUS_MATCHED = "anonymousMatched"
    ANONYMOUS_MESSAGE_RECEIVED = "anonymousMessageReceived"
    ANONYMOUS_PARTNER_LEFT = "anonymousPartnerLeft"
    ANONYMOUS_STOPPED = "anonymousStopped"
    ERROR = "error"
