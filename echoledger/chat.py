"""
One open conversation fed by two channels.

The send call and the push channel can both deliver the assistant's answer.
Everything that changes the visible thread goes through `reduce` so the
answer is shown once: pushes for the open conversation are held while a send
is outstanding and matched against its reply, and a reply already shown from
the send call swallows its late push twin.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Iterable, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict

from .api import format_error
from .chat_client import ChatClient
from .push import AI_TYPING, NEW_MESSAGE, PushChannel

logger = logging.getLogger(__name__)

REPLY_MISSING = "Sorry, I encountered an error processing your request."
SEND_FAILED = "Sorry, I encountered an error. Please try again."


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    role: Literal["user", "assistant"]
    content: str


# events

@dataclass(frozen=True)
class Sent:
    text: str


@dataclass(frozen=True)
class Replied:
    epoch: int
    conversation_id: Optional[str]
    content: str


@dataclass(frozen=True)
class SendFailed:
    epoch: int


@dataclass(frozen=True)
class Pushed:
    conversation_id: Optional[str]
    content: str
    role: str = "assistant"


@dataclass(frozen=True)
class Typing:
    conversation_id: Optional[str]
    is_typing: bool


@dataclass(frozen=True)
class HistoryLoaded:
    conversation_id: str
    messages: Tuple[ChatMessage, ...]


@dataclass(frozen=True)
class NewChat:
    pass


Event = Union[Sent, Replied, SendFailed, Pushed, Typing, HistoryLoaded, NewChat]


@dataclass(frozen=True)
class ConversationState:
    conversation_id: Optional[str] = None
    messages: Tuple[ChatMessage, ...] = ()
    loading: bool = False
    typing: bool = False
    epoch: int = 0
    held: Tuple[ChatMessage, ...] = ()
    # last reply shown from the send call whose push twin has not arrived yet
    delivered: Optional[str] = None


def _assistant(content: str) -> ChatMessage:
    return ChatMessage(role="assistant", content=content)


def reduce(state: ConversationState, event: Event) -> ConversationState:
    if isinstance(event, Sent):
        return replace(
            state,
            messages=state.messages + (ChatMessage(role="user", content=event.text),),
            loading=True,
            delivered=None,
        )

    if isinstance(event, Replied):
        if event.epoch != state.epoch:
            return state
        conversation_id = state.conversation_id or event.conversation_id
        reply = _assistant(event.content)
        extra = tuple(m for m in state.held if m.content != event.content)
        twin_seen = len(extra) < len(state.held)
        return replace(
            state,
            conversation_id=conversation_id,
            messages=state.messages + (reply,) + extra,
            loading=False,
            typing=False,
            held=(),
            delivered=None if twin_seen else event.content,
        )

    if isinstance(event, SendFailed):
        if event.epoch != state.epoch:
            return state
        # a held push is the answer the send call failed to bring back
        tail = state.held or (_assistant(SEND_FAILED),)
        return replace(state, messages=state.messages + tail, loading=False, typing=False, held=())

    if isinstance(event, Pushed):
        if event.conversation_id is None or event.conversation_id != state.conversation_id:
            return state
        message = ChatMessage(role="assistant" if event.role != "user" else "user", content=event.content)
        if state.loading:
            return replace(state, held=state.held + (message,))
        if state.delivered is not None and event.content == state.delivered:
            return replace(state, delivered=None)
        return replace(state, messages=state.messages + (message,), typing=False)

    if isinstance(event, Typing):
        if event.conversation_id is None or event.conversation_id != state.conversation_id:
            return state
        return replace(state, typing=event.is_typing)

    if isinstance(event, HistoryLoaded):
        return ConversationState(conversation_id=event.conversation_id, messages=tuple(event.messages), epoch=state.epoch + 1)

    if isinstance(event, NewChat):
        return ConversationState(epoch=state.epoch + 1)

    raise TypeError(f"unknown chat event {event!r}")


def _cid(data: dict) -> Optional[str]:
    cid = data.get("conversationId")
    return str(cid) if cid is not None else None


def _parse_messages(raw: Iterable[Any]) -> Tuple[ChatMessage, ...]:
    out = []
    for item in raw or []:
        if isinstance(item, dict) and item.get("role") in ("user", "assistant"):
            out.append(ChatMessage(role=item["role"], content=str(item.get("content") or "")))
    return tuple(out)


class ChatSession:
    def __init__(self, chat_client: ChatClient, push: Optional[PushChannel] = None):
        self.chat = chat_client
        self.state = ConversationState()
        self.conversations: List[dict] = []
        self.push: Optional[PushChannel] = None
        if push is not None:
            self.attach(push)

    def dispatch(self, event: Event) -> ConversationState:
        self.state = reduce(self.state, event)
        return self.state

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self.state.messages)

    # push channel

    def attach(self, push: PushChannel) -> None:
        self.detach()
        self.push = push
        push.on(NEW_MESSAGE, self.on_new_message)
        push.on(AI_TYPING, self.on_typing)

    def detach(self) -> None:
        if self.push is not None:
            self.push.off(NEW_MESSAGE, self.on_new_message)
            self.push.off(AI_TYPING, self.on_typing)
            self.push = None

    async def on_new_message(self, data: Any) -> None:
        if not isinstance(data, dict):
            return
        self.dispatch(Pushed(
            conversation_id=_cid(data),
            content=str(data.get("content") or ""),
            role=data.get("role") or "assistant",
        ))

    async def on_typing(self, data: Any) -> None:
        if isinstance(data, dict):
            self.dispatch(Typing(conversation_id=_cid(data), is_typing=bool(data.get("isTyping"))))

    # user actions

    async def send(self, text: str) -> bool:
        if not (text or "").strip() or self.state.loading:
            return False
        epoch = self.state.epoch
        had_conversation = self.state.conversation_id is not None
        self.dispatch(Sent(text))
        try:
            envelope = await self.chat.send_prompt(text, self.state.conversation_id)
        except Exception as e:
            logger.warning("chat send failed: %s", format_error(e))
            self.dispatch(SendFailed(epoch))
            return False

        payload = envelope.payload if isinstance(envelope.payload, dict) else {}
        conversation_id = payload.get("conversationId")
        self.dispatch(Replied(
            epoch=epoch,
            conversation_id=str(conversation_id) if conversation_id else None,
            content=payload.get("response") or REPLY_MISSING,
        ))
        if conversation_id and not had_conversation and self.state.epoch == epoch:
            await self.load_conversations()
        return True

    async def load_conversations(self) -> List[dict]:
        try:
            envelope = await self.chat.conversations()
        except Exception:
            logger.exception("loading conversations failed")
            return self.conversations
        if isinstance(envelope.payload, list):
            self.conversations = envelope.payload
        return self.conversations

    async def open(self, conversation_id: str) -> bool:
        try:
            envelope = await self.chat.message_history(conversation_id)
        except Exception:
            logger.exception("loading history failed. conversation=%s", conversation_id)
            return False
        if envelope.payload is None:
            return False
        self.dispatch(HistoryLoaded(conversation_id=conversation_id, messages=_parse_messages(envelope.payload)))
        return True

    def new_chat(self) -> None:
        self.dispatch(NewChat())
