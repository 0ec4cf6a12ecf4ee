"""Tests for key parsing and pause/resume key handling."""

from __future__ import annotations

import pytest

from recordit.keys import InvalidKeyError, PauseResumeState, describe_key, parse_key_spec


@pytest.mark.parametrize("value", ["a", "s", "Z", "q"])
def test_alphabetic_keys_match_both_cases(value: str) -> None:
    assert parse_key_spec(value) == frozenset({ord(value.upper()), ord(value.lower())})


@pytest.mark.parametrize("value", ["5", " ", "?", "["])
def test_non_alphabetic_keys_match_only_themselves(value: str) -> None:
    assert parse_key_spec(value) == frozenset({ord(value)})


@pytest.mark.parametrize("value", ["", "ab", "é", None])
def test_invalid_key_specs_are_rejected(value) -> None:
    with pytest.raises(InvalidKeyError, match="Stop key must be a single ASCII character."):
        parse_key_spec(value)


def test_control_characters_are_rejected() -> None:
    with pytest.raises(InvalidKeyError, match="Pause key must be a printable character."):
        parse_key_spec("\x07", label="Pause key")


def test_describe_key_uses_upper_case_label() -> None:
    assert describe_key(parse_key_spec("s")) == "S"
    assert describe_key(parse_key_spec("1")) == "1"
    assert describe_key(frozenset()) == ""


def test_toggle_key_pressed_twice_returns_to_running() -> None:
    keys = parse_key_spec("p")
    state = PauseResumeState(keys, keys)

    assert state.toggles
    assert state.handle(ord("p")) is True
    assert state.paused
    assert state.handle(ord("P")) is True
    assert not state.paused


def test_distinct_pause_and_resume_keys_ignore_out_of_state_presses() -> None:
    state = PauseResumeState(parse_key_spec("p"), parse_key_spec("r"))

    assert not state.toggles
    assert state.handle(ord("r")) is False
    assert not state.paused
    assert state.handle(ord("p")) is True
    assert state.paused
    assert state.handle(ord("p")) is False
    assert state.paused
    assert state.handle(ord("r")) is True
    assert not state.paused


def test_unrelated_keys_do_not_change_state() -> None:
    keys = parse_key_spec("p")
    state = PauseResumeState(keys, keys)

    assert not state.matches(ord("x"))
    assert state.handle(ord("x")) is False
    assert not state.paused


def test_state_without_keys_never_pauses() -> None:
    state = PauseResumeState()

    assert not state.toggles
    assert not state.handle(ord("p"))
    assert not state.paused
