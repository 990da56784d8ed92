import asyncio

import pytest

from purchase_tracking.sanitizer import (
    CallSanitizer,
    SanitizedPixel,
    remove_banned_keys,
    sanitize_user_data,
)


@pytest.fixture
def calls():
    return []


@pytest.fixture
def send(calls):
    def _send(*args):
        calls.append(list(args))
        return "sent"
    return _send


# ----------------------------
# set userData
# ----------------------------
def test_set_user_data_is_cleaned(send, calls):
    fbq = CallSanitizer().install(send)
    fbq("set", "userData", {"em": " a@b.com ", "pixel_id": "123", "ph": ""}, "extra")

    assert calls == [["set", "userData", {"em": "a@b.com"}]]


def test_banned_keys_case_insensitive():
    cleaned = remove_banned_keys({"PixelId": 1, "PID": 2, "Id": 3, "Pixel_ID": 4, "fn": "x"})
    assert cleaned == {"fn": "x"}


def test_sanitize_user_data_drops_empty_and_none():
    assert sanitize_user_data({"em": None, "fn": "  ", "ln": " lima ", "ct": 0}) == {"ln": "lima", "ct": 0}
    assert sanitize_user_data("not a dict") == {}


def test_set_user_data_without_payload():
    assert CallSanitizer().sanitize(("set", "userData")) == ["set", "userData", {}]


def test_track_calls_pass_through(send, calls):
    fbq = CallSanitizer().install(send)
    fbq("track", "Purchase", {"value": 10, "id": "keep"}, {"eventID": "pur:1"})
    assert calls == [["track", "Purchase", {"value": 10, "id": "keep"}, {"eventID": "pur:1"}]]


def test_init_strips_quotes_and_banned_keys():
    out = CallSanitizer().sanitize(("init", "'123456'", {"em": "h", "pixel_id": "9"}))
    assert out == ["init", "123456", {"em": "h"}]
    assert CallSanitizer().sanitize(("init", '"42"')) == ["init", "42"]


# ----------------------------
# enrichers
# ----------------------------
def test_enrichers_run_in_registration_order():
    sanitizer = CallSanitizer()
    seen = []

    def first(args):
        seen.append("first")
        return args + ["a"]

    def second(args):
        seen.append("second")
        return args + ["b"]

    sanitizer.register(first)
    sanitizer.register(second, label="segundo")

    assert sanitizer.sanitize(["track", "Lead"]) == ["track", "Lead", "a", "b"]
    assert seen == ["first", "second"]
    assert sanitizer.enrichers == ["first", "segundo"]


def test_enricher_returning_none_keeps_args():
    sanitizer = CallSanitizer()
    sanitizer.register(lambda args: None)
    assert sanitizer.sanitize(["track", "Lead"]) == ["track", "Lead"]


def test_failing_enricher_is_skipped():
    sanitizer = CallSanitizer()

    def boom(args):
        raise RuntimeError("falhou")

    sanitizer.register(boom)
    sanitizer.register(lambda args: args + ["ok"])
    assert sanitizer.sanitize(["track", "Lead"]) == ["track", "Lead", "ok"]


def test_enricher_output_is_sanitized_after():
    sanitizer = CallSanitizer()
    sanitizer.register(lambda args: ["set", "userData", {"pid": "1", "em": "x@y"}])
    assert sanitizer.sanitize(["track", "Lead"]) == ["set", "userData", {"em": "x@y"}]


def test_register_requires_callable():
    with pytest.raises(TypeError):
        CallSanitizer().register("nope")


# ----------------------------
# fallback
# ----------------------------
def test_original_call_is_sent_when_sanitize_fails(send, calls, monkeypatch):
    sanitizer = CallSanitizer()
    fbq = sanitizer.install(send)

    def broken(args):
        raise RuntimeError("quebrou")

    monkeypatch.setattr(sanitizer, "sanitize", broken)
    original = ("set", "userData", {"pixel_id": "1"})
    assert fbq(*original) == "sent"
    assert calls == [list(original)]


# ----------------------------
# instalação
# ----------------------------
def test_install_is_idempotent(send):
    sanitizer = CallSanitizer()
    first = sanitizer.install(send)
    second = sanitizer.install(lambda *a: None)

    assert first is second
    assert first.__wrapped__ is send
    assert sanitizer.installed


def test_teardown_resets(send):
    sanitizer = CallSanitizer()
    sanitizer.register(lambda args: None)
    first = sanitizer.install(send)
    sanitizer.teardown()

    assert not sanitizer.installed
    assert sanitizer.enrichers == []
    assert sanitizer.install(send) is not first


@pytest.mark.asyncio
async def test_install_when_ready_waits_for_surface(send, calls):
    sanitizer = CallSanitizer()
    ready = asyncio.get_running_loop().create_future()

    task = asyncio.ensure_future(sanitizer.install_when_ready(ready))
    await asyncio.sleep(0)
    assert not sanitizer.installed

    ready.set_result(send)
    fbq = await task
    fbq("set", "userData", {"id": "1", "em": "a@b"})

    assert sanitizer.installed
    assert calls == [["set", "userData", {"em": "a@b"}]]


# ----------------------------
# fachada
# ----------------------------
def test_sanitized_pixel_facade(send, calls):
    pixel = SanitizedPixel(send)
    pixel.init("'999'")
    pixel.set_user_data({"em": "a@b", "pixelId": "999"})
    pixel.track("Purchase", {"value": 1.0}, {"eventID": "pur:TX1"})
    pixel.track("PageView")

    assert calls == [
        ["init", "999"],
        ["set", "userData", {"em": "a@b"}],
        ["track", "Purchase", {"value": 1.0}, {"eventID": "pur:TX1"}],
        ["track", "PageView", {}, {}],
    ]


# ----------------------------
# external_id
# ----------------------------
HASHED = "a" * 64


def test_hashed_external_id_resolves_to_last_plaintext():
    sanitizer = CallSanitizer()
    first = sanitizer.sanitize(("set", "userData", {"external_id": " 12345678909 "}))
    second = sanitizer.sanitize(("set", "userData", {"external_id": HASHED}))

    assert first[2] == {"external_id": "12345678909"}
    assert second[2] == {"external_id": "12345678909"}


def test_hashed_external_id_kept_without_plaintext():
    out = CallSanitizer().sanitize(("set", "userData", {"external_id": HASHED.upper()}))
    assert out[2] == {"external_id": HASHED.upper()}


def test_init_resolves_or_drops_external_id():
    sanitizer = CallSanitizer()
    sanitizer.sanitize(("set", "userData", {"external_id": "cpf-1"}))

    assert sanitizer.sanitize(("init", "1", {"external_id": HASHED}))[2] == {"external_id": "cpf-1"}
    assert sanitizer.sanitize(("init", "1", {"external_id": "  ", "em": "h"}))[2] == {"em": "h"}


def test_teardown_forgets_external_id():
    sanitizer = CallSanitizer()
    sanitizer.sanitize(("set", "userData", {"external_id": "cpf-1"}))
    sanitizer.teardown()
    assert sanitizer.sanitize(("set", "userData", {"external_id": HASHED}))[2] == {"external_id": HASHED}
