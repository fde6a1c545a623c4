"""Issue tracker / source-control clients (GitHub, GitLab)."""

import abc
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field

from .errors import ConfigError, SourceControlError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
GITHUB_API = "https://api.github.com"
GITLAB_API = "https://gitlab.com"


@dataclass(frozen=True)
class Issue:
    number: int
    title: str
    body: str | None = None
    labels: tuple[str, ...] = field(default_factory=tuple)

    def to_context(self) -> dict:
        """The fields the model gets to see."""
        return {"number": self.number, "title": self.title, "body": self.body}


@dataclass(frozen=True)
class PullRequest:
    number: int
    url: str
    title: str | None = None
    body: str | None = None

    def to_context(self) -> dict:
        return {"number": self.number, "title": self.title, "body": self.body}


class SourceControl(abc.ABC):
    """Base HTTP client; subclasses map the provider's JSON to Issue/PullRequest."""

    name = "scm"

    def __init__(self, api_url: str, owner: str, repo: str, token: str | None, *, timeout: int = DEFAULT_TIMEOUT):
        if not owner or not repo:
            raise ConfigError(f"{self.name}: 'owner' and 'repo' must be configured")
        self.api_url = api_url.rstrip("/")
        self.owner = owner
        self.repo = repo
        self.token = token
        self.timeout = timeout

    def _headers(self) -> dict:
        return {"Accept": "application/json", "Content-Type": "application/json"}

    def _request(self, method: str, path: str, payload: dict | None = None) -> dict:
        url = f"{self.api_url}{path}"
        data = json.dumps(payload).encode() if payload is not None else None
        req = urllib.request.Request(url, data=data, headers=self._headers(), method=method)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                raw = resp.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as e:
            body = e.read().decode("utf-8", errors="replace") if e.fp else ""
            raise SourceControlError(
                f"{self.name} API {method} {path} failed with HTTP {e.code}: {body[:500]}"
            ) from e
        except urllib.error.URLError as e:
            raise SourceControlError(f"could not reach {self.name} API at {url}: {e.reason}") from e
        except OSError as e:
            raise SourceControlError(f"{self.name} API {method} {path} failed: {e}") from e
        try:
            decoded = json.loads(raw) if raw else {}
        except json.JSONDecodeError as e:
            raise SourceControlError(f"invalid JSON from {url}: {e}") from e
        if not isinstance(decoded, dict):
            raise SourceControlError(f"unexpected response shape from {url}")
        return decoded

    @abc.abstractmethod
    def issue_get(self, number: int) -> Issue:
        ...

    @abc.abstractmethod
    def create_pull_request(self, base: str, head: str, title: str, body: str) -> PullRequest:
        ...


class GitHub(SourceControl):
    name = "github"

    def _headers(self) -> dict:
        headers = super()._headers()
        headers["Accept"] = "application/vnd.github+json"
        headers["X-GitHub-Api-Version"] = "2022-11-28"
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def issue_get(self, number: int) -> Issue:
        data = self._request("GET", f"/repos/{self.owner}/{self.repo}/issues/{number}")
        if "pull_request" in data:
            logger.warning("#%s is a pull request, treating it as an issue", number)
        return Issue(
            number=int(data.get("number", number)),
            title=data.get("title") or "",
            body=data.get("body"),
            labels=tuple(
                label.get("name", "") if isinstance(label, dict) else str(label)
                for label in data.get("labels") or []
            ),
        )

    def create_pull_request(self, base: str, head: str, title: str, body: str) -> PullRequest:
        data = self._request(
            "POST",
            f"/repos/{self.owner}/{self.repo}/pulls",
            {"base": base, "head": head, "title": title, "body": body},
        )
        if "number" not in data:
            raise SourceControlError("github API returned a pull request without a number")
        return PullRequest(
            number=int(data["number"]),
            url=data.get("html_url") or data.get("url", ""),
            title=data.get("title"),
            body=data.get("body"),
        )


class GitLab(SourceControl):
    name = "gitlab"

    def _headers(self) -> dict:
        headers = super()._headers()
        if self.token:
            headers["PRIVATE-TOKEN"] = self.token
        return headers

    @property
    def _project(self) -> str:
        return urllib.parse.quote(f"{self.owner}/{self.repo}", safe="")

    def issue_get(self, number: int) -> Issue:
        data = self._request("GET", f"/api/v4/projects/{self._project}/issues/{number}")
        return Issue(
            number=int(data.get("iid", number)),
            title=data.get("title") or "",
            body=data.get("description"),
            labels=tuple(str(label) for label in data.get("labels") or []),
        )

    def create_pull_request(self, base: str, head: str, title: str, body: str) -> PullRequest:
        data = self._request(
            "POST",
            f"/api/v4/projects/{self._project}/merge_requests",
            {
                "source_branch": head,
                "target_branch": base,
                "title": title,
                "description": body,
            },
        )
        if "iid" not in data:
            raise SourceControlError("gitlab API returned a merge request without an iid")
        return PullRequest(
            number=int(data["iid"]),
            url=data.get("web_url", ""),
            title=data.get("title"),
            body=data.get("description"),
        )


def make_client(scm: str, owner: str, repo: str, token: str | None, api_url: str | None = None) -> SourceControl:
    """Build the client for the configured provider."""
    if scm == "github":
        return GitHub(api_url or GITHUB_API, owner, repo, token)
    if scm == "gitlab":
        return GitLab(api_url or GITLAB_API, owner, repo, token)
    raise ConfigError(f"unknown source-control provider {scm!r} (expected github or gitlab)")
