"""
Script Models — remote script documents as served by the script service.

A script ("command") is a list of topics. Each topic is a named thread
holding an ordered list of lines; a line can carry text, attachments, a
question (`collect`), a conditional and any number of directives. The
compiler turns every line into one or more engine Steps.

Wire keys are camelCase (`isStarterTrigger`, `validationRegex`); a few
platform keys keep their snake_case name (`fb_attachment`).
"""
from __future__ import annotations

from typing import Any, Optional, Union

from pydantic import Field

from models.schemas import (
    BackToBot, Condition, ContactHuman, ExecuteScript, GotoDialogue,
    JsonApiDirective, LinkToSubscription, ScriptModel, SetVarDirective,
)


# ──────────────────────────────────────────────────────────────
#  Questions
# ──────────────────────────────────────────────────────────────

class CollectOption(ScriptModel):
    """One answer branch of a question."""
    type: str = "string"                          # utterance | string | regex
    pattern: str = ""
    action: Optional[str] = "next"
    execute: Optional[ExecuteScript] = None
    default: bool = False
    fb_quick_reply: bool = Field(False, alias="fb_quick_reply")
    fb_quick_reply_payload: Optional[str] = Field(None, alias="fb_quick_reply_payload")
    fb_quick_reply_image_url: Optional[str] = Field(None, alias="fb_quick_reply_image_url")
    fb_quick_reply_content_type: Optional[str] = Field(None, alias="fb_quick_reply_content_type")


class Collect(ScriptModel):
    key: Optional[str] = None
    options: list[CollectOption] = []
    multiple: bool = False
    validation: Any = None
    validation_regex: Optional[str] = None
    validation_message: Optional[str] = None
    check_if_attribute_exists: bool = False
    cancel_button_name: Optional[str] = None
    allow_canceling_conversation: bool = False


class QuickReplySet(ScriptModel):
    """Buttons offered under the previous line, plus what to do with the tap."""
    quick_replies: list[dict[str, Any]] = []
    save_to_attribute: Optional[str] = None
    dialogue_triggers: list[str] = []


class MetaField(ScriptModel):
    key: str
    value: Any = None


# ──────────────────────────────────────────────────────────────
#  Lines, topics, scripts
# ──────────────────────────────────────────────────────────────

class ScriptLine(ScriptModel):
    """One authored line of a topic."""
    text: Union[str, list[str], None] = None
    attachments: Optional[list[dict[str, Any]]] = None
    fb_attachment: Optional[dict[str, Any]] = Field(None, alias="fb_attachment")
    quick_reply: Optional[QuickReplySet] = None
    collect: Optional[Collect] = None
    conditional: Optional[Condition] = None
    action: Optional[str] = None
    execute: Optional[ExecuteScript] = None
    meta: list[MetaField] = []

    set_var: Optional[SetVarDirective] = None
    json_api: Optional[JsonApiDirective] = None
    goto_dialogue: Optional[GotoDialogue] = None
    contact_human: Optional[ContactHuman] = None
    link_to_subscription: Optional[LinkToSubscription] = None
    back_to_bot: Optional[BackToBot] = None


class ScriptTopic(ScriptModel):
    topic: str = "default"
    script: list[ScriptLine] = []


class ScriptVariable(ScriptModel):
    name: str
    value: Any = None


class ScriptCommand(ScriptModel):
    """A full script as returned by the script service."""
    id: Optional[str] = None
    script_id: Optional[str] = Field(None, alias="_id")
    command: str = ""
    description: str = ""
    is_starter_trigger: bool = False
    variables: list[ScriptVariable] = []
    script: list[ScriptTopic] = []

    @property
    def found(self) -> bool:
        """The service answers unknown names with an empty document."""
        return bool(self.id)
