"""
Remote script support.

Scripts authored in the script service are fetched by a ScriptProvider
(backend.connector), compiled into conversations by the ScriptCompiler and
run through templates.studio.Studio, which also carries the per-script hook
registry.
"""
from templates.models import (
    Collect, CollectOption, ScriptCommand, ScriptLine, ScriptTopic, ScriptVariable,
)
from templates.registry import ScriptHookRegistry, run_hooks
from templates.compiler import CANCEL_INPUT, ScriptCompiler
