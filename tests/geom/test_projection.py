from __future__ import annotations

import math

import pytest

from osmdeploy.geom.projection import Projector

HALF_WORLD = 20037508.342789244


def test_wgs84_is_identity():
    projector = Projector(4326)
    coords = [(13.4, 52.5), (-87.6, 41.9)]
    assert projector.project(coords) == coords


def test_web_mercator():
    projector = Projector(3857)
    x, y = projector.project_point(180.0, 0.0)
    assert x == pytest.approx(HALF_WORLD)
    assert y == pytest.approx(0.0, abs=1e-6)

    x, y = projector.project_point(0.0, 85.05112878)
    assert y == pytest.approx(HALF_WORLD, rel=1e-6)


def test_poles_are_clamped():
    projector = Projector(3857)
    _, y = projector.project_point(0.0, 90.0)
    assert math.isfinite(y)
    assert y == pytest.approx(HALF_WORLD, rel=1e-6)


def test_empty_coordinates():
    assert Projector(3857).project([]) == []
