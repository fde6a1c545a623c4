"""Console diagnostics for agent sessions, rendered with Rich on stderr."""

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Rebuild the shared console for the --color / --no-color flags."""
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Iterations --


def turn_header(n: int, elapsed: float, timeout: float | None, token_est: int) -> None:
    budget = f"{elapsed:.0f}s/{timeout:.0f}s" if timeout is not None else f"{elapsed:.0f}s"
    title = f"Iteration {n} ({budget}, ~{token_est} tokens sent)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, finish_reason: str) -> None:
    style = "green" if finish_reason in ("stop", "tool_calls") else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  finish_reason={escape(str(finish_reason))}", style=style)
    _console.print(text)


def completion(iterations: int, state: str) -> None:
    if state == "completed":
        _console.print(
            Text(f"  ✓ Agent finished: {iterations} iterations", style="bold green")
        )
    else:
        _console.print(
            Text(
                f"  Agent stopped: {iterations} iterations, state={state}",
                style="bold red",
            )
        )


# -- Tools --


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str, *, retry: bool = False) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="yellow" if retry else "green")
    header.append(f"  {elapsed:.1f}s", style="green")
    if retry:
        header.append("  retry requested", style="yellow")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def steering(text: str) -> None:
    line = Text()
    line.append("  [steering] ", style="yellow")
    line.append(text, style="dim italic")
    _console.print(line)


# -- Model output --


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [assistant] ", style="blue")
    line.append(text)
    _console.print(line)


# -- Messages --


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)
