"""Configuration file loading and merging for coder.

Reads TOML config from ~/.config/coder/config.toml (global) and
<base_dir>/.coder/config.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"

PROJECT_CONFIG = Path(".coder") / "config.toml"

# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_base": str,
    "scm": str,
    "scm_url": str,
    "owner": str,
    "repo": str,
    "base_branch": str,
    "issue_template": str,
    "language": str,
    "max_tokens": int,
    "timeout": (int, float),
    "iteration_delay": (int, float),
    "color": bool,
    "quiet": bool,
}

_LANGUAGE_FIELDS = ("lint", "analyse", "test")

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "groq",
    "model": "deepseek-r1-distill-llama-70b",
    "api_base": None,
    "scm": "github",
    "scm_url": None,
    "owner": None,
    "repo": None,
    "base_branch": "main",
    "issue_template": None,
    "language": None,
    "max_tokens": None,
    "timeout": 1800,
    "iteration_delay": 5,
    "color": False,
    "no_color": False,
    "quiet": False,
}

_TOKEN_ENV = {"github": "GITHUB_TOKEN", "gitlab": "GITLAB_TOKEN"}


@dataclass(frozen=True)
class LanguageProfile:
    name: str
    lint: str | None = None
    analyse: str | None = None
    test: str | None = None

    def command(self, kind: str) -> str:
        cmd = getattr(self, kind)
        if not cmd:
            raise ConfigError(
                f"no {kind} command configured for language {self.name!r}; "
                f"set languages.{self.name}.{kind} in {PROJECT_CONFIG}"
            )
        return cmd


DEFAULT_LANGUAGES: dict[str, LanguageProfile] = {
    "rust": LanguageProfile(
        "rust", lint="cargo clippy -- -D warnings", analyse="cargo check", test="cargo test"
    ),
    "python": LanguageProfile("python", lint="ruff check .", analyse="mypy .", test="pytest"),
    "go": LanguageProfile("go", lint="go vet ./...", analyse="go build ./...", test="go test ./..."),
    "typescript": LanguageProfile(
        "typescript", lint="npx eslint .", analyse="npx tsc --noEmit", test="npm test"
    ),
}

_LANGUAGE_MARKERS = [
    ("Cargo.toml", "rust"),
    ("pyproject.toml", "python"),
    ("setup.py", "python"),
    ("go.mod", "go"),
    ("package.json", "typescript"),
]


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "coder"
    return Path.home() / ".config" / "coder"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate value types in a parsed config dict.

    Raises ConfigError for type mismatches. Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject bools for non-bool fields.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(f"{source}: {key!r} expected {_type_name(expected)}, got bool")
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

    if "max_tokens" in config and config["max_tokens"] < 0:
        raise ConfigError(f"{source}: 'max_tokens' must not be negative")
    for key in ("timeout", "iteration_delay"):
        if key in config and config[key] < 0:
            raise ConfigError(f"{source}: {key!r} must not be negative")


def _validate_languages(languages: Any, source: str) -> dict[str, dict[str, str]]:
    if not isinstance(languages, dict):
        raise ConfigError(f"{source}: 'languages' must be a table")
    for name, profile in languages.items():
        if not isinstance(profile, dict):
            raise ConfigError(f"{source}: languages.{name} must be a table")
        for key, value in profile.items():
            if key not in _LANGUAGE_FIELDS:
                raise ConfigError(
                    f"{source}: languages.{name}.{key}: unknown field "
                    f"(expected one of {', '.join(_LANGUAGE_FIELDS)})"
                )
            if not isinstance(value, str):
                raise ConfigError(
                    f"{source}: languages.{name}.{key}: expected string, got {type(value).__name__}"
                )
    return languages


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    languages = config.pop("languages", None)
    _validate_config(config, label)
    known = {k: v for k, v in config.items() if k in CONFIG_KEYS}
    if languages is not None:
        known["languages"] = _validate_languages(languages, label)
    return known


# --- Public API ---


def load_config(base_dir: str | Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with only the keys actually set in config files.
    ``languages`` tables are merged per language and per field.
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / PROJECT_CONFIG
    project_config = _load_single(project_path, str(project_path))

    global_langs = global_config.pop("languages", {})
    project_langs = project_config.pop("languages", {})
    merged = {**global_config, **project_config}

    languages: dict[str, dict[str, str]] = {}
    for source in (global_langs, project_langs):
        for name, profile in source.items():
            languages.setdefault(name, {}).update(profile)
    if languages:
        merged["languages"] = languages
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    Remaining _UNSET sentinels are replaced with _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    if "color" in config and _is_unset("color") and _is_unset("no_color"):
        args.color = config["color"]
        args.no_color = not config["color"]

    for key, value in config.items():
        if key in ("color", "languages"):
            continue
        if _is_unset(key):
            setattr(args, key, value)

    args.languages = config.get("languages", {})

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def detect_language(base_dir: str | Path) -> str | None:
    base = Path(base_dir)
    for marker, language in _LANGUAGE_MARKERS:
        if (base / marker).is_file():
            return language
    return None


def resolve_language(name: str | None, overrides: dict, base_dir: str | Path) -> LanguageProfile:
    """Pick the language profile: explicit name, else detected from marker files."""
    name = name or detect_language(base_dir)
    if name is None:
        raise ConfigError(
            "could not detect the project language; set 'language' in the config or pass --language"
        )
    base = DEFAULT_LANGUAGES.get(name, LanguageProfile(name))
    fields = {f: getattr(base, f) for f in _LANGUAGE_FIELDS}
    fields.update(overrides.get(name, {}))
    return LanguageProfile(name, **fields)


@dataclass
class Settings:
    """Everything a session needs, resolved once at startup."""

    base_dir: str
    provider: str
    model: str
    language: LanguageProfile
    api_base: str | None = None
    scm: str = "github"
    scm_url: str | None = None
    owner: str | None = None
    repo: str | None = None
    base_branch: str = "main"
    issue_template: str | None = None
    max_tokens: int | None = None
    timeout: float | None = 1800
    iteration_delay: float = 5
    verbose: bool = True
    scm_token: str | None = field(default=None, repr=False)


def settings_from_args(args: argparse.Namespace) -> Settings:
    """Build Settings from a merged namespace; reads the SCM token from the environment."""
    base_dir = str(Path(args.base_dir).resolve())

    issue_template = args.issue_template
    if issue_template:
        p = Path(issue_template).expanduser()
        issue_template = str(p if p.is_absolute() else Path(base_dir) / p)

    token_env = _TOKEN_ENV.get(args.scm)
    return Settings(
        base_dir=base_dir,
        provider=args.provider,
        model=args.model,
        language=resolve_language(args.language, args.languages, base_dir),
        api_base=args.api_base,
        scm=args.scm,
        scm_url=args.scm_url,
        owner=args.owner,
        repo=args.repo,
        base_branch=args.base_branch,
        issue_template=issue_template,
        max_tokens=args.max_tokens,
        timeout=args.timeout,
        iteration_delay=args.iteration_delay,
        verbose=not args.quiet,
        scm_token=os.environ.get(token_env) if token_env else None,
    )


def generate_config() -> str:
    """Return a commented-out template config string."""
    lines = [
        "# coder configuration file",
        f"# Project config: <project>/{PROJECT_CONFIG.as_posix()}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Inference ---",
        '# provider = "groq"',
        '# model = "deepseek-r1-distill-llama-70b"',
        '# api_base = "http://localhost:8080"   # OpenAI-compatible gateway, optional',
        "# max_tokens = 32768                  # conversation budget sent per request",
        "",
        "# --- Source control ---",
        '# scm = "github"                      # "github" | "gitlab"',
        '# scm_url = "https://api.github.com"',
        '# owner = ""',
        '# repo = ""',
        '# base_branch = "main"',
        '# issue_template = ".github/ISSUE_TEMPLATE/bug_report.md"',
        "# Tokens come from GITHUB_TOKEN / GITLAB_TOKEN, never from this file.",
        "",
        "# --- Agent behaviour ---",
        "# timeout = 1800                      # seconds per session",
        "# iteration_delay = 5                 # seconds between model requests",
        '# language = "rust"                   # detected from marker files if unset',
        "",
        "# [languages.rust]",
        '# lint = "cargo clippy -- -D warnings"',
        '# analyse = "cargo check"',
        '# test = "cargo test"',
        "",
        "# --- UI ---",
        "# color = true",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
