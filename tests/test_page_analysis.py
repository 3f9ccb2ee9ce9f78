import random
import threading

import httpx
import pytest

from execution.context import CaseSnapshot, ExecutionContext, PageSnapshot, parse_test_steps
from execution import page_analysis
from execution.page_analysis import (
    FALLBACK_TITLE,
    PageAnalysisStrategy,
    analyze_page,
    extract_quoted,
    extract_test_credentials,
    fallback_snapshot,
)
from execution.strategy import StepOutcome

LOGIN_HTML = """
<html><head><title>Acme Sign In</title></head>
<body>
  <h1>Sign in to Acme</h1>
  <form id="login" action="/session" method="post">
    <input name="email" type="email">
    <input name="password" type="password">
    <input type="submit" value="Log in">
  </form>
  <p>Forgot your password? Contact support.</p>
  <a href="/help">Help centre</a>
</body></html>
"""


def _context(steps, *, test_data=None, snapshot=None) -> ExecutionContext:
    context = ExecutionContext(
        execution_id="exec-1",
        test_case=CaseSnapshot(id=1, title="Login"),
        target_url="https://acme.test/login",
        steps=parse_test_steps(steps),
        test_data=dict(test_data or {}),
    )
    context.page_snapshot = snapshot
    return context


def _live(html: str = LOGIN_HTML) -> PageSnapshot:
    return PageSnapshot(url="https://acme.test/login", title="Acme Sign In", raw_content=html)


def test_analyze_page_counts_forms_and_clickables() -> None:
    analysis = analyze_page(LOGIN_HTML)
    assert analysis.title == "Acme Sign In"
    assert analysis.login_forms == 1
    assert analysis.clickable_elements >= 2
    assert analysis.mentions("Sign in to  acme")
    assert "login form" in analysis.summary


def test_extract_quoted_ignores_apostrophes() -> None:
    assert extract_quoted('Click the "Sign up" button') == "Sign up"
    assert extract_quoted("Check the user's 'Profile' tab") == "Profile"
    assert extract_quoted("Don't do anything") is None


def test_credentials_follow_step_polarity() -> None:
    data = {
        "valid_user": "alice@acme.test",
        "valid_password": "s3cret",
        "invalid_user": {"value": "mallory@acme.test"},
        "invalid_password": "nope",
    }
    valid = extract_test_credentials(data, "Login with valid credentials")
    assert (valid.username, valid.password, valid.is_valid) == ("alice@acme.test", "s3cret", True)
    assert valid.masked_password == "******"

    invalid = extract_test_credentials(data, "Login with an incorrect password")
    assert invalid.username == "mallory@acme.test"
    assert invalid.password == "nope"
    assert invalid.is_valid is False

    defaults = extract_test_credentials('{"broken": ', "Log in")
    assert defaults.username == "test@example.com"


@pytest.mark.asyncio
async def test_fetch_uses_page_content_when_reachable() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["ua"] = request.headers["user-agent"]
        return httpx.Response(200, text=LOGIN_HTML)

    strategy = PageAnalysisStrategy(transport=httpx.MockTransport(handler))
    snapshot = await strategy.fetch_snapshot("https://acme.test/login")

    assert snapshot.title == "Acme Sign In"
    assert snapshot.is_fallback is False
    assert snapshot.raw_content == LOGIN_HTML
    assert "Mozilla" in seen["ua"]


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [404, 503])
async def test_fetch_falls_back_on_http_errors(status: int) -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(status, text="nope"))
    strategy = PageAnalysisStrategy(transport=transport)
    snapshot = await strategy.fetch_snapshot("https://acme.test/")
    assert snapshot.is_fallback is True
    assert snapshot.title == FALLBACK_TITLE


@pytest.mark.asyncio
async def test_fetch_falls_back_on_network_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    strategy = PageAnalysisStrategy(transport=httpx.MockTransport(handler))
    snapshot = await strategy.fetch_snapshot("https://acme.test/")
    assert snapshot.is_fallback is True
    assert snapshot.url == "https://acme.test/"


@pytest.mark.asyncio
async def test_fetch_parses_page_off_the_event_loop(monkeypatch: pytest.MonkeyPatch) -> None:
    threads = []

    def recording(html: str):
        threads.append(threading.get_ident())
        return analyze_page(html)

    monkeypatch.setattr(page_analysis, "analyze_page", recording)
    transport = httpx.MockTransport(lambda request: httpx.Response(200, text=LOGIN_HTML))
    strategy = PageAnalysisStrategy(transport=transport)

    snapshot = await strategy.fetch_snapshot("https://acme.test/login")

    assert snapshot.title == "Acme Sign In"
    assert threads and threads[0] != threading.get_ident()


@pytest.mark.asyncio
async def test_prepare_skips_network_when_fetch_disabled() -> None:
    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover - must not run
        raise AssertionError("network should not be used")

    strategy = PageAnalysisStrategy(
        fetch_real_content=False, transport=httpx.MockTransport(handler)
    )
    snapshot = await strategy.prepare(_context(["Open"]))
    assert snapshot.is_fallback is True


@pytest.mark.asyncio
async def test_login_step_uses_cycle_credentials_and_masks_password() -> None:
    context = _context(
        ["Login with valid credentials"],
        test_data={"valid_user": "alice@acme.test", "valid_password": "hunter2"},
        snapshot=_live(),
    )
    strategy = PageAnalysisStrategy()
    result = await strategy.evaluate(context, context.steps[0])

    assert result.outcome is StepOutcome.COMPLETED
    assert "alice@acme.test" in result.output
    assert "hunter2" not in result.output
    assert "*******" in result.output
    assert result.details["action"] == "login"
    assert any("login sequence" in note for note in result.notes)


@pytest.mark.asyncio
async def test_click_on_missing_element_needs_intervention() -> None:
    context = _context(['Click the "Create account" button'], snapshot=_live())
    result = await PageAnalysisStrategy().evaluate(context, context.steps[0])

    assert result.outcome is StepOutcome.NEEDS_INTERVENTION
    assert result.reason == "Element not found. Please complete click action manually."


@pytest.mark.asyncio
async def test_click_on_present_element_completes() -> None:
    context = _context(['Click the "Help centre" link'], snapshot=_live())
    result = await PageAnalysisStrategy().evaluate(context, context.steps[0])
    assert result.outcome is StepOutcome.COMPLETED
    assert "Help centre" in result.output


@pytest.mark.asyncio
async def test_verify_missing_text_fails_but_simulation_passes() -> None:
    live = _context(['Verify "Order confirmed" is displayed'], snapshot=_live())
    failed = await PageAnalysisStrategy().evaluate(live, live.steps[0])
    assert failed.outcome is StepOutcome.FAILED
    assert "Order confirmed" in failed.output

    simulated = _context(
        ['Verify "Order confirmed" is displayed'],
        snapshot=fallback_snapshot("https://acme.test/"),
    )
    passed = await PageAnalysisStrategy().evaluate(simulated, simulated.steps[0])
    assert passed.outcome is StepOutcome.COMPLETED


@pytest.mark.asyncio
async def test_blank_step_fails() -> None:
    context = _context([{"description": ""}], snapshot=_live())
    result = await PageAnalysisStrategy().evaluate(context, context.steps[0])
    assert result.outcome is StepOutcome.FAILED


@pytest.mark.asyncio
async def test_evaluate_prepares_lazily_and_returns_snapshot_update() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, text=LOGIN_HTML))
    context = _context(["Scroll down"])
    result = await PageAnalysisStrategy(transport=transport).evaluate(context, context.steps[0])

    assert result.outcome is StepOutcome.COMPLETED
    assert result.snapshot_update["title"] == "Acme Sign In"
    assert result.snapshot_update["is_fallback"] is False


@pytest.mark.asyncio
async def test_random_escalation_only_hits_configured_step() -> None:
    context = _context(["Scroll", "Wait", "Look around", "Wait again"], snapshot=_live())
    strategy = PageAnalysisStrategy(
        intervention_probability=0.5, intervention_step_index=2, rng=random.Random(1)
    )
    outcomes = [
        (await strategy.evaluate(context, step)).outcome for step in context.steps
    ]
    assert outcomes[0] is StepOutcome.COMPLETED
    assert outcomes[1] is StepOutcome.COMPLETED
    assert outcomes[3] is StepOutcome.COMPLETED

    always = PageAnalysisStrategy(intervention_probability=1.0, intervention_step_index=2)
    escalated = await always.evaluate(context, context.steps[2])
    assert escalated.outcome is StepOutcome.NEEDS_INTERVENTION


@pytest.mark.asyncio
async def test_unexpected_errors_become_intervention(monkeypatch: pytest.MonkeyPatch) -> None:
    strategy = PageAnalysisStrategy()

    def boom(*args, **kwargs):
        raise RuntimeError("parser exploded")

    monkeypatch.setattr(strategy, "_dispatch", boom)
    context = _context(["Anything"], snapshot=_live())
    result = await strategy.evaluate(context, context.steps[0])
    assert result.outcome is StepOutcome.NEEDS_INTERVENTION
    assert "parser exploded" in result.output
