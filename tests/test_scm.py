"""Tests for the GitHub / GitLab clients with urlopen patched out."""

import io
import json
import urllib.error
from unittest.mock import patch

import pytest

from coder.errors import ConfigError, SourceControlError
from coder.scm import GitHub, GitLab, SourceControl, make_client


def _response(payload):
    return io.BytesIO(json.dumps(payload).encode())


class Recorder:
    """Stands in for urlopen; records requests and replays canned payloads."""

    def __init__(self, *payloads):
        self.payloads = list(payloads)
        self.requests = []

    def __call__(self, req, timeout=None):
        self.requests.append(req)
        payload = self.payloads.pop(0)
        if isinstance(payload, Exception):
            raise payload
        return _response(payload)


class TestGitHub:
    def test_issue_get(self):
        rec = Recorder({"number": 14, "title": "Crash", "body": "boom", "labels": [{"name": "bug"}]})
        client = GitHub("https://api.github.com", "acme", "widgets", "tok")
        with patch("urllib.request.urlopen", rec):
            issue = client.issue_get(14)
        assert issue.number == 14
        assert issue.title == "Crash"
        assert issue.labels == ("bug",)
        req = rec.requests[0]
        assert req.full_url == "https://api.github.com/repos/acme/widgets/issues/14"
        assert req.get_method() == "GET"
        assert req.get_header("Authorization") == "Bearer tok"

    def test_null_title_becomes_empty(self):
        rec = Recorder({"number": 3, "title": None, "body": None})
        client = GitHub("https://api.github.com", "acme", "widgets", None)
        with patch("urllib.request.urlopen", rec):
            issue = client.issue_get(3)
        assert issue.title == ""
        assert rec.requests[0].get_header("Authorization") is None

    def test_create_pull_request(self):
        rec = Recorder({"number": 7, "html_url": "https://github.com/acme/widgets/pull/7"})
        client = GitHub("https://api.github.com/", "acme", "widgets", "tok")
        with patch("urllib.request.urlopen", rec):
            pr = client.create_pull_request("main", "coder/fix-issue-14", "Fix", "Body")
        assert pr.number == 7
        assert pr.url == "https://github.com/acme/widgets/pull/7"
        req = rec.requests[0]
        assert req.full_url == "https://api.github.com/repos/acme/widgets/pulls"
        assert req.get_method() == "POST"
        assert json.loads(req.data) == {
            "base": "main",
            "head": "coder/fix-issue-14",
            "title": "Fix",
            "body": "Body",
        }

    def test_http_error(self):
        err = urllib.error.HTTPError(
            "https://api.github.com/x", 404, "Not Found", {}, io.BytesIO(b'{"message": "Not Found"}')
        )
        client = GitHub("https://api.github.com", "acme", "widgets", "tok")
        with patch("urllib.request.urlopen", Recorder(err)):
            with pytest.raises(SourceControlError, match="HTTP 404"):
                client.issue_get(99)

    def test_unreachable(self):
        err = urllib.error.URLError("connection refused")
        client = GitHub("https://api.github.com", "acme", "widgets", "tok")
        with patch("urllib.request.urlopen", Recorder(err)):
            with pytest.raises(SourceControlError, match="could not reach"):
                client.issue_get(1)

    def test_invalid_json(self):
        client = GitHub("https://api.github.com", "acme", "widgets", "tok")
        with patch("urllib.request.urlopen", lambda req, timeout=None: io.BytesIO(b"<html>")):
            with pytest.raises(SourceControlError, match="invalid JSON"):
                client.issue_get(1)


class TestGitLab:
    def test_issue_get_uses_iid_and_description(self):
        rec = Recorder({"iid": 5, "title": "Leak", "description": "details", "labels": ["bug"]})
        client = GitLab("https://gitlab.com", "group/sub", "proj", "tok")
        with patch("urllib.request.urlopen", rec):
            issue = client.issue_get(5)
        assert (issue.number, issue.title, issue.body, issue.labels) == (5, "Leak", "details", ("bug",))
        req = rec.requests[0]
        assert req.full_url == "https://gitlab.com/api/v4/projects/group%2Fsub%2Fproj/issues/5"
        assert req.get_header("Private-token") == "tok"

    def test_create_merge_request(self):
        rec = Recorder({"iid": 9, "web_url": "https://gitlab.com/g/p/-/merge_requests/9"})
        client = GitLab("https://gitlab.com", "g", "p", "tok")
        with patch("urllib.request.urlopen", rec):
            pr = client.create_pull_request("main", "feature", "T", "B")
        assert pr.number == 9
        assert json.loads(rec.requests[0].data)["source_branch"] == "feature"


def test_make_client():
    assert isinstance(make_client("github", "o", "r", None), GitHub)
    assert isinstance(make_client("gitlab", "o", "r", None), GitLab)
    assert make_client("github", "o", "r", None, "https://ghe.local/api/v3").api_url == "https://ghe.local/api/v3"


def test_make_client_unknown_provider():
    with pytest.raises(ConfigError, match="bitbucket"):
        make_client("bitbucket", "o", "r", None)


def test_owner_and_repo_required():
    with pytest.raises(ConfigError, match="owner"):
        make_client("github", None, "r", None)


def test_base_client_is_abstract():
    with pytest.raises(TypeError, match="abstract"):
        SourceControl("https://example.test", "o", "r", None)
