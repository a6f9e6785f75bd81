import pytest

from casedocs.session import BrowserSession


class FakeContext:
    def __init__(self):
        self.cookies_list = [
            {"name": "PHPSESSID", "value": "abc", "domain": "auction.example.test", "path": "/"}
        ]
        self.pages = [self]
        self.saved_state = None
        self.closed = False

    def evaluate(self, _script):
        return "Mozilla/5.0 TestBrowser"

    def cookies(self):
        return list(self.cookies_list)

    def storage_state(self, *, path):
        self.saved_state = path

    def close(self):
        self.closed = True


def test_requests_session_carries_browser_cookies_and_user_agent():
    browser = BrowserSession()
    browser.context = FakeContext()

    session = browser.requests_session()

    assert session.headers["User-Agent"] == "Mozilla/5.0 TestBrowser"
    assert session.cookies.get("PHPSESSID") == "abc"

    browser.context.cookies_list[0]["value"] = "renewed"
    browser.refresh_cookies(session)
    assert session.cookies.get("PHPSESSID") == "renewed"


def test_close_saves_storage_state(tmp_path):
    state = tmp_path / "auth" / "storage_state.json"
    browser = BrowserSession(storage_state=state)
    context = FakeContext()
    browser.context = context

    browser.close()

    assert context.saved_state == str(state)
    assert context.closed
    assert browser.context is None


def test_new_page_requires_start():
    with pytest.raises(RuntimeError):
        BrowserSession().new_page()
