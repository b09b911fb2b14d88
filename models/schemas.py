"""
Core data models for the ScriptBot engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import re
from enum import Enum
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ConversationStatus(str, Enum):
    NEW = "new"
    ACTIVE = "active"
    ENDING = "ending"                    # timeout thread playing out
    TRANSITIONING = "transitioning"      # handing off to another script
    INACTIVE = "inactive"
    STOPPED = "stopped"
    COMPLETED = "completed"
    TIMEOUT = "timeout"
    UNKNOWN_THREAD = "unknown_thread"


class TaskStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class StepKind(str, Enum):
    """What a scripted step does when the scheduler dequeues it."""
    MESSAGE = "message"                       # outbound text/attachments
    QUESTION = "question"                     # outbound + wait for an answer
    ACTION = "action"                         # directive only (next, stop, thread name…)
    CONDITIONAL = "conditional"               # branch without output
    SET_VAR = "set_var"                       # assign a conversation variable
    JSON_API = "json_api"                     # call an external JSON API
    GOTO_DIALOGUE = "goto_dialogue"           # redirect to another dialogue
    CONTACT_HUMAN = "contact_human"           # hand off to a human operator
    LINK_SUBSCRIPTION = "link_subscription"   # register the user for subscriptions
    BACK_TO_BOT = "back_to_bot"               # hand control back to the bot


# ──────────────────────────────────────────────────────────────
#  Message: an inbound or outbound chat record
# ──────────────────────────────────────────────────────────────

class PipelineTag(BaseModel):
    """Which pipeline stage last touched a message."""
    stage: str = "ingest"


class Message(BaseModel):
    """
    A chat message as seen by the engine.

    Platform adapters may attach any extra fields; they are preserved.
    """
    model_config = ConfigDict(extra="allow")

    type: str = ""
    user: str = ""
    channel: str = ""
    text: Optional[str] = ""
    attachments: Optional[list[Any]] = None
    attachment: Optional[dict[str, Any]] = None
    pipeline: Optional[PipelineTag] = None
    raw_message: Optional[dict[str, Any]] = None
    match: Any = None                         # regex match set by the matcher
    question: str = ""                        # question snapshot set by capture
    script_name: Optional[str] = None
    script_id: Optional[str] = None


class SendReceipt(BaseModel):
    """What a transport returns after accepting an outbound message."""
    model_config = ConfigDict(extra="allow")

    id: str = ""
    delivered: bool = False                   # True only if the network confirmed delivery


class UserAttribute(BaseModel):
    """One point in a user's attribute time series."""
    user_id: str
    key: str
    value: Any = None
    ts: float = 0.0                           # epoch milliseconds


# ──────────────────────────────────────────────────────────────
#  Script-authored directive payloads (camelCase on the wire)
# ──────────────────────────────────────────────────────────────

class ScriptModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


class AttributeRef(ScriptModel):
    name: str = ""


class OperationEntity(ScriptModel):
    """A typed value: text | number | date | keyword | attribute."""
    type: str = ""
    text_value: Any = None
    number_value: Any = None
    date_value: Any = None
    keyword: str = ""
    attribute: Optional[AttributeRef] = None


class Operation(ScriptModel):
    operand: str = ""                          # and | or | add | … | addDays | subtractMinutes
    first_entity: Optional[OperationEntity] = None
    second_entity: Optional[OperationEntity] = None


class CalculationEntity(ScriptModel):
    type: str = ""                             # simpleValue | operation
    value_entity: Optional[OperationEntity] = None
    operation: Optional[Operation] = None


class Filter(ScriptModel):
    filter_by: str = ""                        # attribute | calculation
    filter_item: Optional[AttributeRef] = None
    filter_value: Any = None
    filter_operation: str = ""
    first_calculation: Optional[CalculationEntity] = None
    second_calculation: Optional[CalculationEntity] = None
    calculation_comparator: str = ""


class DirectToFlowCondition(ScriptModel):
    """Filters plus the groups to pick from when they hold."""
    filters: list[Filter] = []
    allow_random: bool = False
    logical_operator: str = "and"
    selected_item_groups: list[Any] = []


class GotoDialogue(ScriptModel):
    filters: list[Filter] = []
    allow_random: bool = False
    logical_operator: str = "and"
    dialogue_groups: list[Any] = []
    else_conditions: list[DirectToFlowCondition] = []

    def as_conditions(self) -> list[DirectToFlowCondition]:
        head = DirectToFlowCondition(
            filters=self.filters,
            allow_random=self.allow_random,
            logical_operator=self.logical_operator,
            selected_item_groups=self.dialogue_groups,
        )
        return [head, *self.else_conditions]


class LinkToSubscription(ScriptModel):
    filters: list[Filter] = []
    allow_random: bool = False
    logical_operator: str = "and"
    subscription_groups: list[Any] = []
    else_conditions: list[DirectToFlowCondition] = []
    loopback_url: str = ""
    helper_api_url: str = ""

    def as_conditions(self) -> list[DirectToFlowCondition]:
        head = DirectToFlowCondition(
            filters=self.filters,
            allow_random=self.allow_random,
            logical_operator=self.logical_operator,
            selected_item_groups=self.subscription_groups,
        )
        return [head, *self.else_conditions]


class ContactHuman(ScriptModel):
    message: str = ""
    waiting_minutes: Any = None
    no_response_message: str = ""
    regain_control_message: str = ""


class BackToBot(ScriptModel):
    is_show_message: bool = False
    message_to_user: str = ""


class SetVarDirective(ScriptModel):
    key: str
    value: Any = None
    is_persist: bool = False
    is_use_operation: bool = False
    operation: Optional[Operation] = None
    value_entity: Optional[OperationEntity] = None


class ApiProperty(ScriptModel):
    """One request parameter; `send_in` is query_string | header | body."""
    key: str = ""
    name: str = ""                             # attribute name for attribute-backed params
    value: Any = None
    send_in: str = "body"


class JsonApiDirective(ScriptModel):
    api_url: str = ""
    request_type: str = "get"
    property_objects: list[ApiProperty] = []
    attribute_objects: list[ApiProperty] = []
    plugin_messages: dict[str, str] = {}


class ExecuteScript(ScriptModel):
    script: str
    thread: str = "default"


class Condition(BaseModel):
    """A conversation conditional: compare two rendered templates, then act."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    left: str = ""
    right: str = ""
    test: str = "equals"                       # equals | !equals | exists | !exists
    action: Any = None                         # directive name, thread name, or callable
    execute: Optional[ExecuteScript] = None


# ──────────────────────────────────────────────────────────────
#  Question handling
# ──────────────────────────────────────────────────────────────

class CaptureOptions(ScriptModel):
    key: Optional[str] = None
    multiple: bool = False
    validation: Any = None
    validation_regex: Optional[str] = None
    validation_message: Optional[str] = None
    check_if_attribute_exists: bool = False


class HandlerOption(BaseModel):
    """One `{pattern, callback}` entry of a question handler list."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    pattern: Union[str, re.Pattern, None] = None
    default: bool = False
    callback: Callable


# ──────────────────────────────────────────────────────────────
#  Step: one scripted unit in a thread
# ──────────────────────────────────────────────────────────────

_PAYLOAD_FIELDS: dict[StepKind, str] = {
    StepKind.CONDITIONAL: "conditional",
    StepKind.SET_VAR: "set_var",
    StepKind.JSON_API: "json_api",
    StepKind.GOTO_DIALOGUE: "goto_dialogue",
    StepKind.CONTACT_HUMAN: "contact_human",
    StepKind.LINK_SUBSCRIPTION: "link_to_subscription",
    StepKind.BACK_TO_BOT: "back_to_bot",
}

_DICT_KEYS: dict[str, StepKind] = {
    "conditional": StepKind.CONDITIONAL,
    "set_var": StepKind.SET_VAR,
    "setVar": StepKind.SET_VAR,
    "json_api": StepKind.JSON_API,
    "jsonApi": StepKind.JSON_API,
    "goto_dialogue": StepKind.GOTO_DIALOGUE,
    "gotoDialogue": StepKind.GOTO_DIALOGUE,
    "contact_human": StepKind.CONTACT_HUMAN,
    "contactHuman": StepKind.CONTACT_HUMAN,
    "link_to_subscription": StepKind.LINK_SUBSCRIPTION,
    "linkToSubscription": StepKind.LINK_SUBSCRIPTION,
    "back_to_bot": StepKind.BACK_TO_BOT,
    "backToBot": StepKind.BACK_TO_BOT,
}


class Step(BaseModel):
    """
    A single step of a thread, tagged by `kind`.

    Exactly one directive payload may be present and it must match the
    kind. Outbound fields (text, attachments, handler, action) belong to
    message, question and action steps. The dispatch bookkeeping fields
    (sent, delivered, api_response, sent_timestamp) are filled in on the
    outbound copy recorded in `Conversation.sent`.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True, extra="allow")

    kind: StepKind = StepKind.MESSAGE

    # outbound content
    text: Union[str, list[str], None] = None
    attachments: Any = None                     # list of dicts, or fn(convo) -> list
    attachment: Optional[dict[str, Any]] = None
    quick_replies: Optional[list[dict[str, Any]]] = None
    channel: str = ""
    messaging_type: Optional[str] = None
    dialogue_id: Optional[str] = None
    dialogue_name: Optional[str] = None

    # pacing
    delay: Optional[int] = None                 # ms, relative to the previous dispatch
    timestamp: Optional[float] = None           # absolute epoch ms, set at dequeue time

    # question / action
    handler: Any = None                         # fn(message, convo) or list[HandlerOption]
    capture_options: Optional[CaptureOptions] = None
    action: Any = None
    execute: Optional[ExecuteScript] = None

    # directive payloads
    conditional: Optional[Condition] = None
    set_var: Optional[SetVarDirective] = None
    json_api: Optional[JsonApiDirective] = None
    goto_dialogue: Optional[GotoDialogue] = None
    contact_human: Optional[ContactHuman] = None
    link_to_subscription: Optional[LinkToSubscription] = None
    back_to_bot: Optional[BackToBot] = None
    call_scheduler: Optional[Callable] = None   # async fn(subscription_group)

    # dispatch bookkeeping
    sent: bool = False
    delivered: bool = False
    api_response: Any = None
    sent_timestamp: Optional[float] = None
    continue_typing: bool = False

    @model_validator(mode="after")
    def _check_payload(self) -> Step:
        for kind, field_name in _PAYLOAD_FIELDS.items():
            present = getattr(self, field_name) is not None
            if kind == self.kind and not present:
                raise ValueError(f"{self.kind.value} step requires '{field_name}'")
            if kind != self.kind and present:
                raise ValueError(
                    f"{self.kind.value} step cannot carry '{field_name}'"
                )
        if self.kind == StepKind.QUESTION and self.handler is None:
            raise ValueError("question step requires a handler")
        if self.kind == StepKind.ACTION and self.action is None:
            raise ValueError("action step requires an action")
        if isinstance(self.handler, list):
            self.handler = [
                h if isinstance(h, HandlerOption) else HandlerOption(**h)
                for h in self.handler
            ]
        return self

    @property
    def has_content(self) -> bool:
        return bool(self.text or self.attachments or self.attachment)

    @classmethod
    def coerce(cls, message: Union[str, dict[str, Any], Step]) -> Step:
        """Build a Step from a string, a loose dict, or an existing Step."""
        if isinstance(message, Step):
            return message
        if isinstance(message, str):
            return cls(kind=StepKind.MESSAGE, text=message)

        data = dict(message)
        if "kind" in data:
            return cls(**data)

        kinds = {kind for key, kind in _DICT_KEYS.items() if data.get(key) is not None}
        if len(kinds) > 1:
            raise ValueError(
                f"step carries more than one directive: {sorted(k.value for k in kinds)}"
            )
        for key in list(data):
            if key in _DICT_KEYS and key != _PAYLOAD_FIELDS.get(_DICT_KEYS[key]):
                data[_PAYLOAD_FIELDS[_DICT_KEYS[key]]] = data.pop(key)

        if kinds:
            kind = kinds.pop()
        elif data.get("handler") is not None:
            kind = StepKind.QUESTION
        elif data.get("text") or data.get("attachments") or data.get("attachment"):
            kind = StepKind.MESSAGE
        elif data.get("action") is not None:
            kind = StepKind.ACTION
        else:
            kind = StepKind.MESSAGE
        return cls(kind=kind, **data)
