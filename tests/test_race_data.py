from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from race_data import PlaceRank, RaceData, Racer, sort_racers

T0 = datetime(2025, 2, 1, 10, 0, 0, tzinfo=timezone.utc)


# ---------------------- PlaceRank ----------------------

def test_place_rank_sort_order():
    tokens = ["DNF", "3", "", "1", "XYZ", "2", "DEF", "", "10"]
    ordered = [p.text for p in sorted(PlaceRank(t) for t in tokens)]
    assert ordered == ["1", "2", "3", "10", "", "", "DEF", "DNF", "XYZ"]


@pytest.mark.parametrize("token", ["0", "-1", "1.5"])
def test_non_positive_or_fractional_places_sort_as_text(token):
    assert PlaceRank("") < PlaceRank(token)
    assert PlaceRank("99") < PlaceRank(token)


def test_place_rank_basics():
    assert PlaceRank(" 4 ").text == "4"
    assert PlaceRank(None).has_place_data is False
    assert PlaceRank("DQ").has_place_data is True
    assert PlaceRank("") == PlaceRank("   ")
    assert PlaceRank("2").compare_to(PlaceRank("10")) == -1
    assert PlaceRank("DNF").compare_to(PlaceRank("DNF")) == 0
    assert PlaceRank("1").compare_to(None) == 1


def test_sort_racers_by_place_then_lane():
    racers = [
        Racer(lane=1, place=PlaceRank("")),
        Racer(lane=2, place=PlaceRank("2")),
        Racer(lane=3, place=PlaceRank("DNF")),
        Racer(lane=4, place=PlaceRank("1")),
        Racer(lane=5, place=PlaceRank("")),
    ]
    assert [r.lane for r in sort_racers(racers, "place")] == [4, 2, 1, 5, 3]
    assert [r.lane for r in sort_racers(racers, "lane")] == [1, 2, 3, 4, 5]


# ---------------------- Delayed laps ----------------------

def test_delayed_lap_display_window():
    r = Racer(lane=1, laps_remaining=Decimal(5))
    r.initialize_delayed_lap_count(T0)
    r.update_laps_remaining(Decimal(4), now=T0)

    assert r.get_delayed_laps_remaining(5, now=T0) == 5
    assert r.get_delayed_laps_remaining(5, now=T0 + timedelta(seconds=4.999)) == 5
    assert r.get_delayed_laps_remaining(5, now=T0 + timedelta(seconds=5)) == 4
    assert r.get_delayed_laps_remaining(5, now=T0 + timedelta(minutes=3)) == 4


def test_delayed_laps_zero_when_done():
    r = Racer(lane=1, laps_remaining=Decimal(1))
    r.initialize_delayed_lap_count(T0)
    r.update_laps_remaining(Decimal(0), now=T0)
    assert r.get_delayed_laps_remaining(5, now=T0) == 0


def test_first_sighting_shows_immediately():
    r = Racer(lane=1)
    r.initialize_delayed_lap_count(T0)
    r.update_laps_remaining(Decimal(9), now=T0)
    assert r.get_delayed_laps_remaining(5, now=T0) == 9


def test_skip_delay_applies_at_once():
    r = Racer(lane=1, laps_remaining=Decimal(7))
    r.initialize_delayed_lap_count(T0)
    r.update_laps_remaining(Decimal(6), skip_delay=True, now=T0 + timedelta(seconds=1))
    assert r.delayed_laps_remaining == 6
    assert r.get_delayed_laps_remaining(5, now=T0 + timedelta(seconds=1)) == 6


def test_unchanged_lap_count_keeps_timestamp():
    r = Racer(lane=1, laps_remaining=Decimal(7))
    r.initialize_delayed_lap_count(T0)
    r.update_laps_remaining(Decimal(7), now=T0 + timedelta(seconds=30))
    r.update_laps_remaining(Decimal(7), skip_delay=True, now=T0 + timedelta(seconds=30))
    assert r.lap_count_last_changed == T0


def test_racer_flags():
    r = Racer(lane=3, laps_remaining=Decimal("4.5"))
    assert r.has_half_lap
    assert not r.has_first_crossing
    r.last_split_time = timedelta(seconds=10.2)
    assert r.has_first_crossing

    race = RaceData(racers=[Racer(lane=1, laps_remaining=Decimal(9)), r])
    assert race.has_half_lap_laps()
    assert race.find_racer(3) is r
    assert race.find_racer(8) is None
