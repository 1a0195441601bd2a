"""Claude Agent SDK provider.

Wraps claude_agent_sdk.query() and maps the SDK's typed messages onto
canonical Messages.
"""
from __future__ import annotations

import asyncio
import logging
import shutil
from collections import deque
from typing import Any, AsyncIterator

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKError,
    CLIJSONDecodeError,
    CLINotFoundError,
    ProcessError,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
    query,
)

from ..errors import ProviderExecutionError, ProviderNotInstalledError
from ..failure_classifier import classify_failure, is_permission_denial
from ..models import (
    ContentBlock,
    ErrorKind,
    ExecuteOptions,
    Message,
    MessageRole,
    ProviderKind,
)
from .base import MUTATING_TOOLS, Provider
from .models import CLAUDE_MODEL_MAP

logger = logging.getLogger(__name__)


class ClaudeProvider(Provider):
    """Provider backed by the Claude Agent SDK.

    Auth: works with the CLI's own OAuth login by default. If
    api_key_env is set and the env var exists, the key is handed to
    the CLI as ANTHROPIC_API_KEY.
    """

    kind = ProviderKind.CLAUDE
    default_command = "claude"

    async def check_auth(self) -> bool:
        # OAuth credentials may live in the OS keychain, out of reach.
        # An expired login surfaces at run time as AUTH_EXPIRED instead.
        return True

    def builtin_models(self) -> tuple[str, ...]:
        return tuple(CLAUDE_MODEL_MAP.values())

    def api_key_var(self) -> str:
        return "ANTHROPIC_API_KEY"

    def build_options(
        self,
        options: ExecuteOptions,
        stderr_callback: Any = None,
    ) -> ClaudeAgentOptions:
        """Translate ExecuteOptions into SDK options."""
        kwargs: dict[str, Any] = {
            "cwd": options.cwd,
            "model": options.model,
            "max_turns": options.max_turns,
            "allowed_tools": self.allowed_tools(
                options.allowed_tools, options.read_only,
            ),
            "permission_mode": "default" if options.read_only else "bypassPermissions",
        }
        if options.read_only:
            kwargs["disallowed_tools"] = sorted(MUTATING_TOOLS)
        if options.system_prompt:
            kwargs["system_prompt"] = options.system_prompt
        if stderr_callback is not None:
            kwargs["stderr"] = stderr_callback
        cli_path = shutil.which(self._command)
        if cli_path:
            kwargs["cli_path"] = cli_path
        env = self._build_env()
        if env is not None:
            kwargs["env"] = {self.api_key_var(): env[self.api_key_var()]}
        return ClaudeAgentOptions(**kwargs)

    async def execute(self, options: ExecuteOptions) -> AsyncIterator[Message]:
        """Run a Claude agent session via the SDK."""
        stderr_tail: deque[str] = deque(maxlen=200)
        sdk_options = self.build_options(options, stderr_tail.append)
        loop = asyncio.get_running_loop()
        timeout = options.timeout_seconds
        deadline = loop.time() + timeout if timeout and timeout > 0 else None
        tool_names: dict[str, str] = {}
        streamed_text = False

        logger.info(
            "Claude query: model=%s cwd=%s read_only=%s max_turns=%s",
            options.model, options.cwd, options.read_only, options.max_turns,
        )
        stream = query(prompt=options.prompt, options=sdk_options)
        try:
            while True:
                remaining = None if deadline is None else deadline - loop.time()
                if remaining is not None and remaining <= 0:
                    raise _timeout_error(timeout)
                try:
                    async with asyncio.timeout(remaining):
                        sdk_message = await anext(stream)
                except StopAsyncIteration:
                    break
                except TimeoutError:
                    raise _timeout_error(timeout) from None

                if isinstance(sdk_message, ResultMessage):
                    self._check_result(sdk_message, stderr_tail)
                    # Avoid duplicating output the agent already streamed.
                    if not streamed_text and sdk_message.result:
                        yield Message.agent_text(sdk_message.result)
                    continue

                message = self.convert_message(sdk_message, tool_names)
                if message is None:
                    continue
                if message.role == MessageRole.AGENT and message.text:
                    streamed_text = True
                yield message
        except CLINotFoundError as exc:
            raise ProviderNotInstalledError(self.name, str(exc)) from exc
        except ProcessError as exc:
            stderr = exc.stderr or "\n".join(stderr_tail)
            classification = classify_failure(exit_code=exc.exit_code, stderr=stderr)
            logger.warning(
                "Claude CLI failed (exit=%s): %s",
                exc.exit_code, classification.describe(),
            )
            raise ProviderExecutionError(
                classification.kind,
                f"claude exited with code {exc.exit_code}",
                exit_code=exc.exit_code,
                stderr=stderr,
            ) from exc
        except CLIJSONDecodeError as exc:
            raise ProviderExecutionError(
                ErrorKind.PROCESS_CRASHED,
                f"claude produced unreadable output: {exc}",
                stderr="\n".join(stderr_tail),
            ) from exc
        except ClaudeSDKError as exc:
            stderr = "\n".join(stderr_tail)
            classification = classify_failure(
                exit_code=None, stderr=stderr, detail=str(exc),
            )
            raise ProviderExecutionError(
                classification.kind, str(exc), stderr=stderr,
            ) from exc
        finally:
            await stream.aclose()

    def convert_message(
        self,
        sdk_message: Any,
        tool_names: dict[str, str] | None = None,
    ) -> Message | None:
        """Map one SDK message to a canonical Message (None = nothing to show)."""
        tool_names = tool_names if tool_names is not None else {}

        if isinstance(sdk_message, AssistantMessage):
            blocks: list[ContentBlock] = []
            for block in sdk_message.content:
                if isinstance(block, TextBlock):
                    if block.text:
                        blocks.append(ContentBlock.text_block(block.text))
                elif isinstance(block, ToolUseBlock):
                    tool_names[block.id] = block.name
                    blocks.append(
                        ContentBlock.tool_use(block.name, block.id, block.input)
                    )
                elif isinstance(block, ThinkingBlock):
                    logger.debug("Claude thinking: %d chars", len(block.thinking))
            if not blocks:
                return None
            return Message(role=MessageRole.AGENT, blocks=tuple(blocks))

        if isinstance(sdk_message, UserMessage):
            if isinstance(sdk_message.content, str):
                return None
            results: list[ContentBlock] = []
            for block in sdk_message.content:
                if not isinstance(block, ToolResultBlock):
                    continue
                text = _tool_result_text(block.content)
                is_error = bool(block.is_error)
                results.append(ContentBlock.tool_result(
                    block.tool_use_id,
                    text,
                    tool_name=tool_names.get(block.tool_use_id),
                    is_error=is_error,
                    error_kind=ErrorKind.TOOL_PERMISSION_DENIED
                    if is_error and is_permission_denial(text) else None,
                ))
            if not results:
                return None
            return Message(role=MessageRole.TOOL, blocks=tuple(results))

        if isinstance(sdk_message, SystemMessage):
            logger.debug("Claude system message: %s", sdk_message.subtype)
        return None

    def _check_result(self, result: ResultMessage, stderr_tail: deque[str]) -> None:
        if result.subtype == "error_max_turns":
            raise ProviderExecutionError(
                ErrorKind.TIMEOUT,
                f"claude stopped at its turn limit after {result.num_turns} turns",
            )
        if result.is_error or result.subtype != "success":
            text = result.result or result.subtype
            stderr = "\n".join(stderr_tail)
            classification = classify_failure(
                exit_code=None, stderr=stderr, detail=text,
            )
            logger.warning(
                "Claude result error (%s): %s",
                result.subtype, classification.describe(),
            )
            raise ProviderExecutionError(
                classification.kind,
                f"claude reported an error: {text}",
                stderr=stderr,
            )


def _tool_result_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict):
                if item.get("type") == "text":
                    parts.append(str(item.get("text", "")))
            else:
                parts.append(str(item))
        return "\n".join(parts)
    return str(content)


def _timeout_error(timeout: float | None) -> ProviderExecutionError:
    return ProviderExecutionError(
        ErrorKind.TIMEOUT, f"claude exceeded its {timeout}s time limit",
    )
