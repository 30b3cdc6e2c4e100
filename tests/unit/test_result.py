from __future__ import annotations

from guided_flow.flow.result import Err, Ok, map_ok, safe_call, unwrap_or


def test_unwrap_and_map() -> None:
    error = Err(ValueError("x"))

    assert unwrap_or(Ok(1), 0) == 1
    assert unwrap_or(error, 0) == 0
    assert map_ok(Ok(2), lambda v: v * 2) == Ok(4)
    assert map_ok(error, lambda v: v * 2) is error
    assert Ok(None).ok and not error.ok


def test_safe_call_captures_exceptions() -> None:
    result = safe_call(lambda: 1 / 0)

    assert isinstance(result, Err)
    assert isinstance(result.error, ZeroDivisionError)
    assert safe_call(lambda: "ok") == Ok("ok")
