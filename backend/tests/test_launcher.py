from __future__ import annotations

import webbrowser

import pytest

from tasktool import launcher


@pytest.mark.parametrize(
    "url, message",
    [
        ("", "Ticket URL ist leer."),
        ("   ", "Ticket URL ist leer."),
        (None, "Ticket URL ist leer."),
        ("tracker/TT-1", "Ticket URL ist ungültig (nur http/https)."),
        ("ftp://files.example/x", "Ticket URL ist ungültig (nur http/https)."),
        ("javascript:alert(1)", "Ticket URL ist ungültig (nur http/https)."),
    ],
)
def test_invalid_urls_are_reported(url, message, monkeypatch):
    opened = []
    monkeypatch.setattr(webbrowser, "open", lambda target: opened.append(target) or True)
    assert launcher.try_open(url) == (False, message)
    assert opened == []


def test_valid_url_is_opened(monkeypatch):
    opened = []
    monkeypatch.setattr(webbrowser, "open", lambda target: opened.append(target) or True)
    assert launcher.try_open("  https://tracker.example/TT-1 ") == (True, "")
    assert opened == ["https://tracker.example/TT-1"]


def test_missing_browser_is_reported(monkeypatch):
    monkeypatch.setattr(webbrowser, "open", lambda target: False)
    ok, error = launcher.try_open("http://tracker.example/TT-2")
    assert ok is False
    assert "kein Browser" in error


def test_browser_error_is_reported(monkeypatch):
    def failing_open(target):
        raise webbrowser.Error("no runnable browser")

    monkeypatch.setattr(webbrowser, "open", failing_open)
    ok, error = launcher.try_open("http://tracker.example/TT-3")
    assert ok is False
    assert error.startswith("Ticket URL konnte nicht geöffnet werden:")
