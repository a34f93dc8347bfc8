"""A GitHub REST client with the operations bots need."""

from __future__ import annotations

import base64
import binascii
import logging
import tempfile
import threading
import time
import zipfile
from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import parse_qs, quote, urljoin, urlsplit

import requests
from requests.auth import AuthBase, HTTPBasicAuth

from .ratelimit import SecondaryRateLimitWaiter

API_URL = "https://api.github.com/"
DEFAULT_BUFFER_SIZE = 1024 * 1024
GIT_USERNAME = "x-access-token"

_EXPIRY_DELTA = timedelta(seconds=10)
_DEFAULT_DELAY = 30.0
_TIMEOUT = 60.0
_CHUNK_SIZE = 64 * 1024
_LOG_REDIRECTS = 3
_ARTIFACT_REDIRECTS = 10

_log = logging.getLogger(__name__)


class GitHubError(Exception):
    """A failed GitHub API call."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(GitHubError):
    """A GitHub API call rejected by a rate limit; delay is the suggested wait in seconds."""

    def __init__(self, message: str, status_code: int | None = None, delay: float = _DEFAULT_DELAY) -> None:
        super().__init__(message, status_code)
        self.delay = delay


@dataclass(frozen=True)
class Token:
    access_token: str
    expiry: datetime | None = None

    @property
    def valid(self) -> bool:
        """True while the token is not within ten seconds of its expiry."""
        if self.expiry is None:
            return True
        return datetime.now(timezone.utc) < self.expiry - _EXPIRY_DELTA


class TokenSource(ABC):
    """Issues and revokes access tokens."""

    @abstractmethod
    def token(self) -> Token:
        """Return a fresh token."""

    @abstractmethod
    def revoke(self, token: str) -> None:
        """Revoke the given access token."""


class StaticTokenSource(TokenSource):
    """Hands out one fixed token until it is revoked."""

    def __init__(self, token: str) -> None:
        self._token = token
        self._revoked = False

    def token(self) -> Token:
        if self._revoked:
            raise GitHubError("token has been revoked")
        return Token(self._token)

    def revoke(self, token: str) -> None:
        if token != self._token:
            raise GitHubError("cannot revoke a token this source did not issue")
        self._revoked = True


class _BearerAuth(AuthBase):
    def __init__(self, client: GitHubClient) -> None:
        self._client = client

    def __call__(self, request: requests.PreparedRequest) -> requests.PreparedRequest:
        request.headers["Authorization"] = f"Bearer {self._client._token().access_token}"
        return request


def _status(response: requests.Response) -> str:
    return f"{response.status_code} {response.reason or ''}".strip()


def _seconds(delay: float) -> str:
    return str(int(delay)) if float(delay).is_integer() else repr(float(delay))


def _int_header(response: requests.Response, name: str) -> int | None:
    value = response.headers.get(name)
    try:
        return int(value) if value else None
    except ValueError:
        return None


def _api_error(response: requests.Response) -> GitHubError:
    """Describe a non-2xx response, recognising GitHub's rate limit responses."""
    try:
        doc = response.json()
    except ValueError:
        doc = {}
    if not isinstance(doc, Mapping):
        doc = {}
    message = str(doc.get("message") or "")
    doc_url = str(doc.get("documentation_url") or "")
    request = response.request
    method = request.method if request is not None else "GET"
    url = request.url if request is not None else response.url
    text = f"{method} {url}: {response.status_code} {message}".strip()
    code = response.status_code

    if code in (403, 429):
        reset = _int_header(response, "X-RateLimit-Reset")
        if response.headers.get("X-RateLimit-Remaining") == "0":
            delay = reset - time.time() if reset is not None else 0.0
            return RateLimitedError(text, code, delay)
        if doc_url.endswith(("#abuse-rate-limits", "secondary-rate-limits")):
            retry_after = _int_header(response, "Retry-After")
            if retry_after is not None:
                delay = float(retry_after)
            elif reset is not None:
                delay = reset - time.time()
            else:
                delay = 0.0
            return RateLimitedError(text, code, delay)
    return GitHubError(text, code)


def _check(response: requests.Response, prefix: str) -> None:
    """Raise for a non-2xx response, prefixing the message."""
    if 200 <= response.status_code < 300:
        return
    err = _api_error(response)
    if isinstance(err, RateLimitedError):
        raise RateLimitedError(f"{prefix}: {err}", err.status_code, err.delay)
    raise GitHubError(f"{prefix}: {err}", err.status_code)


def _validate(response: requests.Response, action: str) -> None:
    """Raise unless the response is exactly 200 OK."""
    if not 200 <= response.status_code < 300:
        err = _api_error(response)
        if isinstance(err, RateLimitedError):
            raise RateLimitedError(
                f"hit rate limiting: delay returned from GitHub {_seconds(err.delay)}",
                err.status_code,
                err.delay,
            )
        raise err
    if response.status_code != 200:
        raise GitHubError(f"failed to {action}: {_status(response)}", response.status_code)


def _next_page(response: requests.Response) -> int:
    link = response.links.get("next")
    if not link:
        return 0
    pages = parse_qs(urlsplit(link.get("url", "")).query).get("page")
    try:
        return int(pages[0]) if pages else 0
    except ValueError:
        return 0


def _segments(*parts: Any) -> str:
    return "/".join(quote(str(part), safe="") for part in parts)


def _pr_coordinates(pr: Mapping[str, Any]) -> tuple[str, str, int]:
    repo = pr["base"]["repo"]
    return repo["owner"]["login"], repo["name"], pr["number"]


def _run_coordinates(wr: Mapping[str, Any]) -> tuple[str, str, int]:
    repo = wr["repository"]
    return repo["owner"]["login"], repo["name"], wr["id"]


def _has_label(pr: Mapping[str, Any], label: str) -> bool:
    return any(item.get("name") == label for item in pr.get("labels") or [])


def _bot_marker(bot_name: str) -> str:
    return f"<!-- bot:{bot_name} -->"


class GitHubClient:
    """Operations on one organisation and repository, authenticated by a token source.

    When no session is given, a session is created that sends the token source's
    token on every API request; a given session is used as it is.
    """

    def __init__(
        self,
        org: str,
        repo: str,
        token_source: TokenSource | None = None,
        session: requests.Session | None = None,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        base_url: str = API_URL,
        secondary_rate_limit_waiter: bool = False,
    ) -> None:
        self.org = org
        self.repo = repo
        self.token_source = token_source
        self.buffer_size = buffer_size
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self._lock = threading.Lock()
        self._cached: Token | None = None

        if session is None:
            session = requests.Session()
            if token_source is not None:
                session.auth = _BearerAuth(self)
        if secondary_rate_limit_waiter:
            waiter = SecondaryRateLimitWaiter()
            session.mount("https://", waiter)
            session.mount("http://", waiter)
        self.session = session
        self._downloads = requests.Session()

    def _token(self) -> Token:
        if self.token_source is None:
            raise GitHubError("client has no token source")
        with self._lock:
            if self._cached is None or not self._cached.valid:
                self._cached = self.token_source.token()
            return self._cached

    def _send(self, method: str, path: str, failure: str, **kwargs: Any) -> requests.Response:
        url = path if path.startswith(("http://", "https://")) else urljoin(self.base_url, path)
        headers = {"Accept": "application/vnd.github+json", **kwargs.pop("headers", {})}
        try:
            return self.session.request(method, url, headers=headers, timeout=_TIMEOUT, **kwargs)
        except requests.RequestException as exc:
            raise GitHubError(f"{failure}: {exc}") from exc

    def close(self) -> None:
        """Revoke the client's token."""
        if self.token_source is None:
            return
        try:
            token = self._token()
        except Exception as exc:
            _log.warning("failed to get token for revocation: %s", exc)
            raise GitHubError(f"getting token for revocation: {exc}") from exc
        try:
            self.token_source.revoke(token.access_token)
        except Exception as exc:
            _log.error("failed to revoke token: %s", exc)
            raise GitHubError(f"revoking token: {exc}") from exc

    def git_auth(self) -> HTTPBasicAuth:
        """Return basic credentials for git over HTTPS."""
        try:
            token = self._token()
        except GitHubError as exc:
            raise GitHubError(f"getting token from client's token source: {exc}") from exc
        return HTTPBasicAuth(GIT_USERNAME, token.access_token)

    def repo_url(self) -> str:
        """Return the HTTPS git URL of the configured repository."""
        if not self.org or not self.repo:
            raise ValueError("GitHubClient is not configured with both an org and repo")
        return f"https://github.com/{self.org}/{self.repo}.git"

    def add_label(self, pr: Mapping[str, Any], label: str) -> None:
        """Add a label to a pull request unless it already has it."""
        owner, name, number = _pr_coordinates(pr)
        if _has_label(pr, label):
            _log.debug("PR %d has label %s, nothing to do", number, label)
            return
        _log.info("Adding label %r to PR %d", label, number)
        action = "add label to pull request"
        response = self._send(
            "POST",
            f"repos/{_segments(owner, name)}/issues/{number}/labels",
            f"failed to {action}",
            json=[label],
        )
        _validate(response, action)

    def remove_label(self, pr: Mapping[str, Any], label: str) -> None:
        """Remove a label from a pull request if it has it."""
        owner, name, number = _pr_coordinates(pr)
        if not _has_label(pr, label):
            _log.debug("PR %d doesn't have label %s, nothing to do", number, label)
            return
        _log.info("Removing label %r from PR %d", label, number)
        action = "remove label from pull request"
        response = self._send(
            "DELETE",
            f"repos/{_segments(owner, name)}/issues/{number}/labels/{_segments(label)}",
            f"failed to {action}",
        )
        _validate(response, action)

    def set_comment(self, pr: Mapping[str, Any], bot_name: str, content: str) -> None:
        """Replace the bot's comment on a pull request, or add one."""
        owner, name, number = _pr_coordinates(pr)
        repo_path = _segments(owner, name)
        response = self._send("GET", f"repos/{repo_path}/issues/{number}/comments", "listing comments")
        _check(response, "listing comments")
        marker = _bot_marker(bot_name)
        body = f"{marker}\n\n{content}"

        for comment in response.json():
            if marker in (comment.get("body") or ""):
                edited = self._send(
                    "PATCH",
                    f"repos/{repo_path}/issues/comments/{comment['id']}",
                    "failed to editing comment",
                    json={"body": body},
                )
                if edited.status_code != 200:
                    _validate(edited, "editing comment")
                return

        created = self._send(
            "POST", f"repos/{repo_path}/issues/{number}/comments", "failed to create comment", json={"body": body}
        )
        if created.status_code != 201:
            _validate(created, "create comment")

    def add_comment(self, pr: Mapping[str, Any], bot_name: str, content: str) -> None:
        """Add a new bot comment to a pull request."""
        owner, name, number = _pr_coordinates(pr)
        body = f"{_bot_marker(bot_name)}\n\n{content}"
        response = self._send(
            "POST",
            f"repos/{_segments(owner, name)}/issues/{number}/comments",
            "failed to creating comment",
            json={"body": body},
        )
        if response.status_code != 201:
            _validate(response, "creating comment")

    def _redirect_location(self, path: str, failure: str, max_redirects: int) -> str:
        url = path
        remaining = max_redirects
        while True:
            response = self._send("GET", url, failure, allow_redirects=False)
            if response.status_code == 301 and remaining > 0 and response.headers.get("Location"):
                url = response.headers["Location"]
                remaining -= 1
                continue
            break
        if response.status_code != 302 or not response.headers.get("Location"):
            raise GitHubError(f"{failure}: unexpected status code: {_status(response)}", response.status_code)
        return response.headers["Location"]

    def _download_zip(self, url: str) -> zipfile.ZipFile:
        spool = tempfile.SpooledTemporaryFile(max_size=self.buffer_size)
        try:
            with self._downloads.get(url, stream=True, timeout=_TIMEOUT) as response:
                if not 200 <= response.status_code < 300:
                    raise GitHubError(f"could not download {url}: {_status(response)}", response.status_code)
                for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                    spool.write(chunk)
            spool.seek(0)
            return zipfile.ZipFile(spool)
        except requests.RequestException as exc:
            spool.close()
            raise GitHubError(f"could not download {url}: {exc}") from exc
        except zipfile.BadZipFile as exc:
            spool.close()
            raise GitHubError(f"failed to create zip reader: {exc}") from exc
        except GitHubError:
            spool.close()
            raise

    def fetch_workflow_run_logs(self, wr: Mapping[str, Any]) -> zipfile.ZipFile:
        """Return the log archive of a workflow run."""
        owner, name, run_id = _run_coordinates(wr)
        location = self._redirect_location(
            f"repos/{_segments(owner, name)}/actions/runs/{run_id}/logs",
            "failed to initiate log retrieval",
            _LOG_REDIRECTS,
        )
        return self._download_zip(location)

    def get_workload_run_pull_request_number(self, wre: Mapping[str, Any]) -> int:
        """Return the number of the open pull request whose head matches the run's commit."""
        owner = wre["repository"]["owner"]["login"]
        name = wre["repository"]["name"]
        run = wre["workflow_run"]
        params: dict[str, Any] = {"state": "open", "head": f"{owner}:{run['head_branch']}", "per_page": 10}
        while True:
            response = self._send(
                "GET", f"repos/{_segments(owner, name)}/pulls", "failed to list pull requests", params=params
            )
            _check(response, "failed to list pull requests")
            for pull in response.json():
                if pull.get("head", {}).get("sha") == run["head_sha"]:
                    return pull["number"]
            page = _next_page(response)
            if page == 0:
                break
            params["page"] = page
        raise GitHubError("no matching pull request found")

    def list_artifacts(self, wr: Mapping[str, Any], per_page: int | None = None) -> Iterator[dict[str, Any]]:
        """Yield every artifact of a workflow run, fetching pages as they are needed."""
        owner, name, run_id = _run_coordinates(wr)
        action = "list workflow artifacts"
        params: dict[str, Any] = {}
        if per_page:
            params["per_page"] = per_page
        while True:
            response = self._send(
                "GET",
                f"repos/{_segments(owner, name)}/actions/runs/{run_id}/artifacts",
                f"failed to {action}",
                params=dict(params),
            )
            _validate(response, action)
            yield from response.json().get("artifacts") or []
            page = _next_page(response)
            if page == 0:
                return
            params["page"] = page

    def fetch_workflow_run_artifact(self, wr: Mapping[str, Any], name: str) -> zipfile.ZipFile:
        """Return the archive of the workflow run's artifact with the given name."""
        owner, repo_name, run_id = _run_coordinates(wr)
        for artifact in self.list_artifacts(wr, per_page=30):
            if artifact.get("name") != name:
                continue
            aid = artifact.get("id")
            location = self._redirect_location(
                f"repos/{_segments(owner, repo_name)}/actions/artifacts/{aid}/zip",
                f"failed to download artifact ({name}) [{aid}]",
                _ARTIFACT_REDIRECTS,
            )
            return self._download_zip(location)
        raise GitHubError(f"artifact {name} for workflow_run {run_id} not found")

    def get_release(self, owner: str, repo: str, tag: str) -> dict[str, Any]:
        """Return the release with the given tag."""
        failure = f"failed to get release by tag {tag}"
        response = self._send("GET", f"repos/{_segments(owner, repo)}/releases/tags/{_segments(tag)}", failure)
        _check(response, failure)
        _validate(response, f"get release by tag {tag}")
        return response.json()

    def _contents(self, owner: str, repo: str, path: str, ref: str, action: str) -> Any:
        params = {"ref": ref} if ref else {}
        escaped = quote(path.rstrip("/"), safe="/")
        response = self._send(
            "GET", f"repos/{_segments(owner, repo)}/contents/{escaped}", f"failed to {action}", params=params
        )
        _validate(response, action)
        return response.json()

    def get_file_content(self, owner: str, repo: str, path: str, ref: str) -> str:
        """Return the decoded content of a file at a ref; a directory gives an empty string."""
        doc = self._contents(owner, repo, path, ref, f"get file contents for {path} at ref {ref}")
        if not isinstance(doc, Mapping):
            return ""
        encoding = doc.get("encoding") or ""
        content = doc.get("content")
        if encoding == "base64":
            if content is None:
                raise GitHubError("failed to decode content: malformed response: base64 encoding of null content")
            try:
                return base64.b64decode(content).decode("utf-8")
            except (binascii.Error, ValueError) as exc:
                raise GitHubError(f"failed to decode content: {exc}") from exc
        if encoding == "":
            return content or ""
        if encoding == "none":
            raise GitHubError(
                "failed to decode content: unsupported content encoding: none, "
                "this may occur when file size > 1 MB"
            )
        raise GitHubError(f"failed to decode content: unsupported content encoding: {encoding}")

    def _search_code(self, query: str, page: int | None, per_page: int | None, action: str) -> dict[str, Any]:
        params: dict[str, Any] = {"q": query}
        if page:
            params["page"] = page
        if per_page:
            params["per_page"] = per_page
        response = self._send("GET", "search/code", f"failed to {action}", params=params)
        _validate(response, action)
        return response.json()

    def search_content_in_filename(
        self, owner: str, repo: str, path: str, content: str, page: int | None = None, per_page: int | None = None
    ) -> dict[str, Any]:
        """Search for text in files with the given name in a repository."""
        query = f"{content} in:file filename:{path} repo:{owner}/{repo}"
        return self._search_code(query, page, per_page, f"search content {content} in repository")

    def search_filename_in_repository(
        self, owner: str, repo: str, path: str, page: int | None = None, per_page: int | None = None
    ) -> dict[str, Any]:
        """Search for files with the given name in a repository."""
        query = f"filename:{path} repo:{owner}/{repo}"
        return self._search_code(query, page, per_page, f"search filename {path} in repository")

    def list_files(self, owner: str, repo: str, path: str, ref: str) -> list[dict[str, Any]]:
        """Return the entries of a directory at a ref; a file gives an empty list."""
        doc = self._contents(owner, repo, path, ref, f"list file contents for {path} at ref {ref}")
        return list(doc) if isinstance(doc, list) else []