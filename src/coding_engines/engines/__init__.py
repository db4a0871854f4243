"""Coding engine variants and the factory that selects them."""

from coding_engines.engines.base import CodingEngine
from coding_engines.engines.claude_code import ClaudeCodeEngine
from coding_engines.engines.cli_template import CliTemplateEngine
from coding_engines.engines.factory import EngineFactoryOptions, create_coding_engine
from coding_engines.engines.opencode import OpencodeEngine

__all__ = [
    "ClaudeCodeEngine",
    "CliTemplateEngine",
    "CodingEngine",
    "EngineFactoryOptions",
    "OpencodeEngine",
    "create_coding_engine",
]
