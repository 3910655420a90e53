import json
import sys
from pathlib import Path

import pytest

# Ensure repo root is on sys.path so `import multimodal_rag...` works in tests
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tests.fakes import FakeDescriber, FakeEmbedder, build_test_services, make_settings  # noqa: E402


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def describer():
    return FakeDescriber()


@pytest.fixture
def services(settings, embedder, describer):
    svc = build_test_services(settings, embedder=embedder, describer=describer)
    yield svc
    svc.runner.shutdown(wait=True)
    svc.search.shutdown()


def pretty_json(obj) -> str:
    return json.dumps(obj, indent=2, ensure_ascii=False, sort_keys=True)


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item, call):
    """
    Attach request/response payloads into pytest-html report when pytest-html is installed.

    API tests store payloads on the item as:
      item._api_logs = [{"title": "...", "request": ..., "response": ...}, ...]
    """
    outcome = yield
    rep = outcome.get_result()

    if rep.when != "call":
        return

    api_logs = getattr(item, "_api_logs", None)
    if not api_logs:
        return

    extras = getattr(rep, "extras", [])
    try:
        from pytest_html import extras as html_extras
    except ImportError:
        return

    for entry in api_logs:
        title = entry.get("title", "API Call")
        html = (
            f"<h4>{title}</h4>"
            f"<details><summary>Request</summary><pre>{pretty_json(entry.get('request', {}))}</pre></details>"
            f"<details><summary>Response</summary><pre>{pretty_json(entry.get('response', {}))}</pre></details>"
        )
        extras.append(html_extras.html(html))
    rep.extras = extras
