"""Agent loop and command-line entry point."""

import argparse
import functools
import json
import sys
import time
from enum import Enum
from importlib import metadata
from pathlib import Path

from . import fmt, prompt
from .config import (
    _UNSET,
    PROJECT_CONFIG,
    Settings,
    apply_config_to_args,
    generate_config,
    load_config,
    settings_from_args,
)
from .conversation import Conversation, Message, Role, ToolCall
from .errors import CoderError, InferenceError, MalformedResponseError
from .executor import ToolExecutor
from .report import ReportCollector, dump_conversation
from .scm import make_client
from .snapshot import WorkspaceSnapshot
from .tools import (
    ToolInvocation,
    ToolName,
    ToolResult,
    Workflow,
    build_tools,
    parse_arguments,
)

MAX_ARG_LOG = 1000
THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"


class LoopState(Enum):
    AWAITING_MODEL_RESPONSE = "awaiting_model_response"
    PARSING = "parsing"
    EXECUTING_TOOLS = "executing_tools"
    RECORDING = "recording"
    COMPLETED = "completed"
    EMPTY_RESPONSE = "empty_response"
    TIMED_OUT = "timed_out"


def strip_thinking(content: str, open_tag: str = THINK_OPEN, close_tag: str = THINK_CLOSE) -> str:
    """Remove every ``<think>...</think>`` segment from assistant text.

    Raises MalformedResponseError when the delimiters do not pair up.
    """
    out = []
    pos = 0
    while True:
        start = content.find(open_tag, pos)
        stray_close = content.find(close_tag, pos)
        if start == -1:
            if stray_close != -1:
                raise MalformedResponseError(
                    f"{close_tag} without a matching {open_tag} in assistant message"
                )
            out.append(content[pos:])
            break
        if stray_close != -1 and stray_close < start:
            raise MalformedResponseError(f"{close_tag} appears before {open_tag} in assistant message")
        end = content.find(close_tag, start + len(open_tag))
        if end == -1:
            raise MalformedResponseError(f"unterminated {open_tag} block in assistant message")
        nested = content.find(open_tag, start + len(open_tag))
        if nested != -1 and nested < end:
            raise MalformedResponseError(f"nested {open_tag} blocks in assistant message")
        out.append(content[pos:start])
        pos = end + len(close_tag)
    return "".join(out).strip()


def call_llm(
    messages: list[dict],
    tools: list[dict],
    *,
    model: str,
    provider: str,
    api_base: str | None = None,
    api_key: str | None = None,
    verbose: bool = False,
):
    """Call LiteLLM. Returns (message, finish_reason).

    With ``api_base`` the request goes to an OpenAI-compatible gateway that
    routes on ``<provider>/<model>``; otherwise LiteLLM talks to the provider
    directly and reads its key from the environment.
    """
    import litellm

    litellm.suppress_debug_info = True

    if api_base:
        model_str = f"openai/{provider}/{model}"
        kwargs = {"api_base": f"{api_base.rstrip('/')}/v1", "api_key": api_key or "unused"}
    else:
        model_str = f"{provider}/{model}"
        kwargs = {"api_key": api_key} if api_key else {}

    if verbose:
        fmt.info(f"Calling model {model_str} with {len(messages)} messages")

    try:
        response = litellm.completion(
            model=model_str,
            messages=messages,
            tools=tools or None,
            tool_choice="auto" if tools else None,
            **kwargs,
        )
    except Exception as e:
        raise InferenceError(f"LLM call failed: {e}") from e

    try:
        choice = response.choices[0]
    except (AttributeError, IndexError, TypeError) as e:
        raise InferenceError(f"LLM response has no choices: {e}") from e
    return choice.message, choice.finish_reason


def drop_orphan_tool_results(messages: list[Message]) -> list[Message]:
    """Drop tool results whose assistant tool call is not in ``messages``.

    Truncation can cut an assistant turn while keeping its tool results;
    providers reject such a request.
    """
    seen: set[str] = set()
    kept = []
    for m in messages:
        if m.role is Role.ASSISTANT:
            seen.update(tc.id for tc in m.tool_calls)
        elif m.role is Role.TOOL and m.tool_call_id not in seen:
            continue
        kept.append(m)
    return kept


class AgentLoop:
    """Drives one conversation until a terminal state.

    ``llm(messages, tools) -> (message, finish_reason)`` defaults to
    :func:`call_llm` bound to the settings. ``on_failure(conversation, exc)``
    is called before any error that ends the session propagates.
    """

    def __init__(
        self,
        settings: Settings,
        executor: ToolExecutor,
        tools: list[dict],
        *,
        llm=None,
        report: ReportCollector | None = None,
        on_failure=None,
        clock=time.monotonic,
        sleep=time.sleep,
    ):
        self.settings = settings
        self.executor = executor
        self.tools = tools
        self.declared = {ToolName.parse(t["function"]["name"]) for t in tools}
        self.llm = llm or functools.partial(
            call_llm,
            model=settings.model,
            provider=settings.provider,
            api_base=settings.api_base,
            verbose=settings.verbose,
        )
        self.report = report
        self.on_failure = on_failure
        self.clock = clock
        self.sleep = sleep
        self.state = LoopState.AWAITING_MODEL_RESPONSE
        self.iterations = 0

    def run(self, conversation: Conversation) -> LoopState:
        try:
            return self._run(conversation)
        except (Exception, KeyboardInterrupt) as e:
            if self.on_failure is not None:
                self.on_failure(conversation, e)
            raise

    def _finish(self, state: LoopState) -> LoopState:
        self.state = state
        if self.settings.verbose:
            fmt.completion(self.iterations, state.value)
        return state

    def _run(self, conversation: Conversation) -> LoopState:
        verbose = self.settings.verbose
        timeout = self.settings.timeout
        started = self.clock()

        while True:
            elapsed = self.clock() - started
            if timeout is not None and elapsed >= timeout:
                return self._finish(LoopState.TIMED_OUT)

            self.iterations += 1
            self.state = LoopState.AWAITING_MODEL_RESPONSE
            view = drop_orphan_tool_results(conversation.to_bounded_view())
            token_est = conversation.count_view_tokens(view)
            if verbose:
                fmt.turn_header(self.iterations, elapsed, timeout, token_est)

            t0 = self.clock()
            msg, finish_reason = self.llm([m.to_wire() for m in view], self.tools)
            llm_elapsed = self.clock() - t0
            if verbose:
                fmt.llm_timing(llm_elapsed, finish_reason)
            if self.report:
                self.report.record_llm_call(self.iterations, llm_elapsed, token_est, finish_reason)

            self.state = LoopState.PARSING
            content = getattr(msg, "content", None) or ""
            raw_calls = getattr(msg, "tool_calls", None) or []
            if not content.strip() and not raw_calls:
                return self._finish(LoopState.EMPTY_RESPONSE)

            cleaned = strip_thinking(content)
            if not cleaned and not raw_calls:
                return self._finish(LoopState.EMPTY_RESPONSE)

            calls = [
                ToolCall(
                    tc.id or f"call-{self.iterations}-{i}",
                    tc.function.name,
                    tc.function.arguments or "",
                )
                for i, tc in enumerate(raw_calls)
            ]
            conversation.add_message(Message.assistant(cleaned, calls))
            if cleaned and verbose:
                fmt.assistant_text(cleaned)

            # Every name is checked before anything runs.
            tools = [ToolName.parse(call.name, self.declared) for call in calls]

            if not calls:
                self.state = LoopState.RECORDING
                self._steer(conversation, [prompt.USE_TOOLS])
            else:
                self.state = LoopState.EXECUTING_TOOLS
                steering = []
                for call, tool in zip(calls, tools):
                    result = self._handle_tool_call(conversation, call, tool)
                    if result.completed:
                        return self._finish(LoopState.COMPLETED)
                    if not result.succeeded:
                        steering.append(prompt.TOOL_FAILED)
                    elif result.retry:
                        steering.append(prompt.RETRY)
                    else:
                        steering.append(prompt.PROCEED)
                self.state = LoopState.RECORDING
                self._steer(conversation, steering)

            self.sleep(self.settings.iteration_delay)

    def _steer(self, conversation: Conversation, texts: list[str]) -> None:
        content = "\n\n".join(dict.fromkeys(texts))
        conversation.add_message(Message.user(content))
        if self.settings.verbose:
            fmt.steering(content)

    def _handle_tool_call(self, conversation: Conversation, call: ToolCall, tool: ToolName) -> ToolResult:
        """Execute one tool call and append its envelope as a tool message."""
        verbose = self.settings.verbose
        args = None
        t0 = self.clock()
        try:
            args = parse_arguments(tool, call.raw_arguments)
            if verbose:
                pretty = json.dumps(args, indent=2)
                if len(pretty) > MAX_ARG_LOG:
                    pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
                fmt.tool_call(tool.value, pretty)
            result = self.executor.execute(ToolInvocation(call.id, tool, args))
        except Exception as e:
            result = ToolResult.error(str(e), result=getattr(e, "detail", None))
        elapsed = self.clock() - t0

        conversation.add_message(Message.tool(call.id, result.to_json()))

        if result.succeeded and tool is ToolName.CODE_READ:
            conversation.add_reviewed_file(args["path"])

        if verbose:
            if result.succeeded:
                fmt.tool_result(tool.value, elapsed, result.message or "", retry=result.retry)
            else:
                fmt.tool_error(tool.value, result.message or "")
        if self.report:
            self.report.record_tool_call(
                self.iterations,
                tool.value,
                args,
                result.succeeded,
                elapsed,
                retry=result.retry,
                error=None if result.succeeded else result.message,
            )
        return result


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------


def parse_issue_number(value: str) -> int:
    """Parse ``14`` or ``#14`` into a positive issue number."""
    clean = value.lstrip("#")
    try:
        number = int(clean)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid issue number: {value}") from None
    if number == 0:
        raise argparse.ArgumentTypeError("Issue number cannot be 0")
    if number < 0:
        raise argparse.ArgumentTypeError("Issue number cannot be negative")
    return number


def non_negative(kind):
    """argparse type: ``kind(value)``, rejecting negatives."""

    def parse(value: str):
        try:
            number = kind(value)
        except ValueError:
            raise argparse.ArgumentTypeError(f"invalid {kind.__name__} value: {value!r}") from None
        if number < 0:
            raise argparse.ArgumentTypeError(f"must not be negative: {value}")
        return number

    return parse


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="coder",
        description="An AI coder agent that fixes issues and opens pull requests.",
    )
    parser.add_argument("--version", action="store_true", help="Print the version and exit.")
    parser.add_argument(
        "--base-dir",
        default=".",
        help="Repository to work on (default: current directory).",
    )
    parser.add_argument("--provider", default=_UNSET, help="Inference provider (default: groq).")
    parser.add_argument("--model", default=_UNSET, help="Model identifier.")
    parser.add_argument(
        "--api-base",
        default=_UNSET,
        help="Base URL of an OpenAI-compatible inference gateway.",
    )
    parser.add_argument(
        "--max-tokens",
        type=non_negative(int),
        default=_UNSET,
        help="Token budget of the conversation sent on each request (default: unbounded).",
    )
    parser.add_argument(
        "--timeout",
        type=non_negative(float),
        default=_UNSET,
        help="Session wall-clock budget in seconds (default: 1800).",
    )
    parser.add_argument(
        "--iteration-delay",
        type=non_negative(float),
        default=_UNSET,
        help="Pause between model requests in seconds (default: 5).",
    )
    parser.add_argument(
        "--language",
        default=_UNSET,
        help="Language profile for lint/analyse/test (default: detected).",
    )
    parser.add_argument("--base-branch", default=_UNSET, help="Branch pull requests target.")
    parser.add_argument(
        "--report",
        default=None,
        metavar="FILE",
        help="Write a JSON report of the session to FILE.",
    )
    parser.add_argument(
        "-q", "--quiet", action="store_true", default=_UNSET, help="Suppress diagnostics."
    )
    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument("--color", action="store_true", default=_UNSET, help="Force ANSI color.")
    color_group.add_argument(
        "--no-color", action="store_true", default=_UNSET, help="Disable ANSI color."
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")
    init = sub.add_parser("init", help="Write a default .coder/config.toml.")
    init.add_argument("--force", action="store_true", help="Overwrite an existing config.")
    sub.add_parser("index", help="Snapshot the repository tree and file contents.")
    fix = sub.add_parser("fix", help="Fix a bug from a given issue.")
    fix.add_argument(
        "--issue",
        type=parse_issue_number,
        required=True,
        help="The issue number to fix (e.g. #14).",
    )
    fix.add_argument("--further-instruction", default=None, help="Additional instructions.")
    refactor = sub.add_parser("refactor", help="Look for an improvement and open a pull request.")
    refactor.add_argument("--file", default=None, help="Restrict the refactor to one file.")
    return parser


def cmd_init(args) -> int:
    path = Path(args.base_dir) / PROJECT_CONFIG
    if path.exists() and not args.force:
        fmt.error(f"{path} already exists (use --force to overwrite)")
        return 1
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(generate_config(), encoding="utf-8")
    fmt.info(f"Wrote {path}")
    return 0


def cmd_index(args) -> int:
    snapshot = WorkspaceSnapshot.build(args.base_dir)
    snapshot.save()
    fmt.info(f"Indexed {len(snapshot)} files into {snapshot.path}")
    return 0


def _report_settings(settings: Settings, workflow: Workflow) -> dict:
    return {
        "workflow": workflow.value,
        "max_tokens": settings.max_tokens,
        "timeout": settings.timeout,
        "iteration_delay": settings.iteration_delay,
        "language": settings.language.name,
        "scm": settings.scm,
    }


def run_session(args) -> int:
    """Run the fix or refactor workflow. Returns the process exit code."""
    settings = settings_from_args(args)
    workflow = Workflow.FIX if args.command == "fix" else Workflow.REFACTOR

    snapshot = WorkspaceSnapshot.load(settings.base_dir)
    scm = make_client(
        settings.scm, settings.owner, settings.repo, settings.scm_token, settings.scm_url
    )
    executor = ToolExecutor(settings, scm, workflow=workflow)
    tools = build_tools(workflow)

    conversation = Conversation(
        settings.model,
        settings.provider,
        max_tokens=settings.max_tokens,
        repository_path=settings.base_dir,
    )
    conversation.add_message(Message.system(prompt.SYSTEM_PROMPT))
    if workflow is Workflow.FIX:
        task = prompt.fix_prompt(args.issue, snapshot.tree, args.further_instruction)
    else:
        task = prompt.refactor_prompt(snapshot.tree, args.file)
    conversation.add_message(Message.user(task))

    report = ReportCollector() if args.report else None

    def _write_report(outcome: str, exit_code: int, error_message: str | None = None):
        if not report:
            return
        report.finalize(
            task=task,
            model=settings.model,
            provider=settings.provider,
            settings=_report_settings(settings, workflow),
            outcome=outcome,
            exit_code=exit_code,
            error_message=error_message,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if settings.verbose:
            fmt.info(f"Report written to {args.report}")

    def _on_failure(conv: Conversation, exc: BaseException) -> None:
        try:
            path = dump_conversation(conv, settings.base_dir)
        except OSError as e:
            fmt.warning(f"could not save the conversation: {e}")
            return
        fmt.info(f"Conversation saved to {path}")

    loop = AgentLoop(settings, executor, tools, report=report, on_failure=_on_failure)
    try:
        state = loop.run(conversation)
    except Exception as e:
        _write_report("error", 1, str(e))
        raise

    if state is LoopState.TIMED_OUT:
        fmt.warning(f"session timed out after {settings.timeout}s")
    elif state is LoopState.EMPTY_RESPONSE:
        fmt.warning("the model returned an empty response, stopping")
    _write_report(state.value, 0)
    return 0


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("coder-agent")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.command is None:
        parser.error("a command is required (init, index, fix or refactor)")

    try:
        config = load_config(args.base_dir)
        apply_config_to_args(args, config)
        fmt.init(color=args.color, no_color=args.no_color)

        if args.command == "init":
            code = cmd_init(args)
        elif args.command == "index":
            code = cmd_index(args)
        else:
            code = run_session(args)
    except CoderError as e:
        fmt.error(str(e))
        sys.exit(1)
    except OSError as e:
        fmt.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        fmt.warning("interrupted")
        sys.exit(130)
    sys.exit(code)


if __name__ == "__main__":
    main()
