"""Tests for the package logging configuration."""

from __future__ import annotations

import logging

import pytest

import kadaele_pos


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, logging.INFO),
        ("", logging.INFO),
        ("debug", logging.DEBUG),
        (" Warning ", logging.WARNING),
        ("chatty", logging.INFO),
    ],
)
def test_resolve_level(value, expected):
    """Level names are case-insensitive and unknown names fall back."""

    assert kadaele_pos.resolve_level(value) == expected


def test_package_logger_is_configured_once():
    """The shared logger keeps a stderr handler limited to warnings."""

    logger = kadaele_pos.log
    consoles = [
        handler
        for handler in logger.handlers
        if type(handler) is logging.StreamHandler
    ]

    assert logger.name == "kadaele_pos"
    assert len(consoles) == 1
    assert consoles[0].level == logging.WARNING
