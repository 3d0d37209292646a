"""HTTP-based executor for dashboard scraping actions."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

import httpx

from task_engine.engine.actions import ActionKind
from task_engine.executor.base import ActionExecutionError, ActionRequest, ActionResult
from task_engine.executor.extraction import extract_text

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; TaskEngineWorker/0.1)"
DEFAULT_MAX_TEXT_CHARS = 20_000
_TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


class HttpActionSession:
    """Cookie-keeping HTTP client scoped to one task attempt."""

    def __init__(self, client: httpx.Client, *, max_text_chars: int) -> None:
        self._client = client
        self.max_text_chars = max_text_chars

    def run(self, request: ActionRequest) -> ActionResult:
        handler = _HANDLERS.get(request.action)
        if handler is None:
            raise ActionExecutionError(
                f"No HTTP handler for action {request.action.value!r}",
                transient=False,
            )
        return handler(self, request)

    def get(self, url: str, request: ActionRequest) -> httpx.Response:
        return self._send("GET", url, request)

    def post_form(self, url: str, data: dict[str, str], request: ActionRequest) -> httpx.Response:
        return self._send("POST", url, request, data=data)

    def _send(
        self,
        method: str,
        url: str,
        request: ActionRequest,
        *,
        data: dict[str, str] | None = None,
    ) -> httpx.Response:
        if request.cancelled:
            raise ActionExecutionError("Attempt cancelled before request.", transient=True)
        try:
            response = self._client.request(
                method,
                url,
                data=data,
                timeout=request.timeout_seconds,
            )
        except httpx.TimeoutException as error:
            logger.warning("Timeout on %s %s", method, url)
            raise ActionExecutionError(f"Timeout on {method} {url}", transient=True) from error
        except httpx.HTTPError as error:
            logger.warning("HTTP error on %s %s: %s", method, url, error)
            raise ActionExecutionError(f"HTTP error on {method} {url}: {error}") from error

        if response.is_success:
            return response
        raise ActionExecutionError(
            f"HTTP {response.status_code} on {method} {url}",
            transient=response.status_code in _TRANSIENT_STATUS_CODES,
        )


class HttpActionExecutor:
    """Runs scrape actions with plain HTTP requests.

    Each attempt gets its own ``httpx.Client`` so cookies set by a login form
    carry over to the scraped page and nothing leaks between tasks.
    """

    supported_actions: frozenset[ActionKind] = frozenset(ActionKind)

    def __init__(
        self,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        user_agent: str = DEFAULT_USER_AGENT,
        max_text_chars: int = DEFAULT_MAX_TEXT_CHARS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.user_agent = user_agent
        self.max_text_chars = max_text_chars
        self._transport = transport

    @contextmanager
    def session(self) -> Iterator[HttpActionSession]:
        client = httpx.Client(
            timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
            headers={"User-Agent": self.user_agent},
            transport=self._transport,
            follow_redirects=True,
        )
        try:
            yield HttpActionSession(client, max_text_chars=self.max_text_chars)
        finally:
            client.close()


def _scrape_dashboard(session: HttpActionSession, request: ActionRequest) -> ActionResult:
    url = request.parameters["url"]
    selector = request.parameters.get("selector")
    response = session.get(url, request)
    return ActionResult(payload=_page_payload(session, response, selector=selector))


def _login_and_scrape(session: HttpActionSession, request: ActionRequest) -> ActionResult:
    credential = request.credential or {}
    username = credential.get("username")
    password = credential.get("password")
    if not isinstance(username, str) or not isinstance(password, str):
        raise ActionExecutionError(
            "Credential must contain string 'username' and 'password' fields.",
            transient=False,
        )

    parameters = request.parameters
    form = {
        str(parameters.get("username_field") or "username"): username,
        str(parameters.get("password_field") or "password"): password,
    }
    extra_fields = parameters.get("form_fields")
    if isinstance(extra_fields, dict):
        form.update({str(key): str(value) for key, value in extra_fields.items()})

    session.post_form(parameters["login_url"], form, request)
    response = session.get(parameters["url"], request)
    return ActionResult(
        payload=_page_payload(session, response, selector=parameters.get("selector")),
    )


def _page_payload(
    session: HttpActionSession,
    response: httpx.Response,
    *,
    selector: Any,
) -> dict[str, Any]:
    selector_value = selector if isinstance(selector, str) and selector.strip() else None
    final_url = str(response.url)
    return {
        "url": final_url,
        "status_code": response.status_code,
        "selector": selector_value,
        "text": extract_text(
            response.text,
            selector=selector_value,
            url=final_url,
            max_chars=session.max_text_chars,
        ),
    }


_HANDLERS: dict[ActionKind, Callable[[HttpActionSession, ActionRequest], ActionResult]] = {
    ActionKind.SCRAPE_DASHBOARD: _scrape_dashboard,
    ActionKind.LOGIN_AND_SCRAPE: _login_and_scrape,
}
