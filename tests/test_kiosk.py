from __future__ import annotations

import pytest

import kiosk
from core.verification.geo import POSITION_UNAVAILABLE, LatLng, LocationError


def test_parse_args_defaults():
    args = kiosk.parse_args(["--user", "u1", "--department", "cs"])
    assert args.mode == 1
    assert args.lat is None
    assert args.dry_run is False


def test_parse_args_rejects_unknown_mode():
    with pytest.raises(SystemExit):
        kiosk.parse_args(["--user", "u1", "--department", "cs", "--mode", "3"])


def test_location_provider_uses_fixed_position():
    args = kiosk.parse_args(["--user", "u1", "--department", "cs", "--lat", "10.5", "--lng", "106.1"])
    assert kiosk.location_provider(args).current_position(timeout=0.01) == LatLng(10.5, 106.1)


def test_location_provider_without_position_reports_unavailable():
    args = kiosk.parse_args(["--user", "u1", "--department", "cs"])
    with pytest.raises(LocationError) as excinfo:
        kiosk.location_provider(args).current_position(timeout=0.01)
    assert excinfo.value.kind == POSITION_UNAVAILABLE
