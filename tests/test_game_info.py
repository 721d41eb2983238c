#!/usr/bin/env python3
"""
Tests for roster and game-name lookup.

Run with: python tests/test_game_info.py
"""

import sys
import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import requests

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'worker'))

from game_info import GameInfoCache, clean_game_name, extract_game_name, fetch_game_page, parse_players  # noqa: E402
from store import GAME_PLAYERS, GAMES, JsonStore  # noqa: E402

PAGE = """
<html><head><title>Game - Friday Night Fights AWBW</title></head>
<body>
<a href="profile.php?username=Alice">Alice</a> vs
<a href="profile.php?username=Bob_2">Bob_2</a>
<a href="profile.php?username=Alice">Alice</a>
<a href="prevmaps.php?maps_id=42">Spann Island</a>
<script>let playersInfo = {"1": {"countries_code": "OS"}, "2": {"countries_code": "bm"}};</script>
</body></html>
"""


def link_for(game_id):
    return f"https://awbw.example/game.php?games_id={game_id}"


def test_parse_players():
    print("\n[TEST] Roster scrape...")

    info = parse_players(PAGE)
    assert info['players'] == ['Alice', 'Bob_2'], f"Got {info['players']}"
    assert info['countries'] == ['os', 'bm'], f"Got {info['countries']}"

    print("  PASS: Unique players in page order")


def test_game_name_cleanup():
    print("\n[TEST] Game name cleanup...")

    assert extract_game_name(PAGE) == 'Friday Night Fights'
    assert clean_game_name('Game - Sunday League AWBW') == 'Sunday League'
    assert extract_game_name('<html><h1>Big Map</h1></html>') == 'Big Map'
    assert extract_game_name('<html></html>') == ''

    print("  PASS: Cleaned")


def test_fetch_sends_no_cache():
    print("\n[TEST] Page fetch headers...")

    resp = MagicMock(text=PAGE)
    with patch('game_info.requests.get', return_value=resp) as get:
        html = fetch_game_page(link_for('100'), timeout=3)

    assert html == PAGE
    assert get.call_args.kwargs['headers']['Cache-Control'] == 'no-cache'
    assert get.call_args.kwargs['timeout'] == (5, 3)
    resp.raise_for_status.assert_called_once()

    print("  PASS: No-cache fetch")


def test_cache_scrapes_once():
    print("\n[TEST] Roster cached in store...")

    with tempfile.TemporaryDirectory() as tmpdir:
        store = JsonStore(Path(tmpdir))
        cache = GameInfoCache(store, link_for)

        with patch('game_info.fetch_game_page', return_value=PAGE) as fetch:
            assert cache.get_players('100') == ['Alice', 'Bob_2']
            assert cache.get_players('100') == ['Alice', 'Bob_2']
            assert cache.get_game_name('100') == 'Friday Night Fights'
            assert cache.get_game_name('100') == 'Friday Night Fights'

        assert fetch.call_count == 2, f"One scrape per lookup kind, got {fetch.call_count}"
        assert store.get(GAME_PLAYERS, '100')['players'] == ['Alice', 'Bob_2']
        assert store.get(GAMES, '100')['mapName'] == 'Spann Island'

        # A fresh cache reads the store instead of scraping
        fresh = GameInfoCache(store, link_for)
        with patch('game_info.fetch_game_page') as fetch:
            assert fresh.get_players('100') == ['Alice', 'Bob_2']
            assert fresh.get_game_name('100') == 'Friday Night Fights'
        assert not fetch.called

    print("  PASS: Memoized and persisted")


def test_cache_failure_fallbacks():
    print("\n[TEST] Scrape failure...")

    with tempfile.TemporaryDirectory() as tmpdir:
        cache = GameInfoCache(JsonStore(Path(tmpdir)), link_for)
        with patch('game_info.fetch_game_page', side_effect=requests.ConnectionError("down")):
            assert cache.get_players('100') == []
            assert cache.get_game_name('100') == 'Game 100'

    print("  PASS: Empty roster and generic name")


def main():
    print("=" * 60)
    print("GAME INFO TESTS")
    print("=" * 60)

    tests = [
        ('roster scrape', test_parse_players),
        ('game name', test_game_name_cleanup),
        ('no-cache fetch', test_fetch_sends_no_cache),
        ('cache', test_cache_scrapes_once),
        ('failure fallbacks', test_cache_failure_fallbacks),
    ]

    results = []
    for name, test in tests:
        try:
            test()
            results.append((name, True))
        except AssertionError as e:
            print(f"  FAIL: {e}")
            results.append((name, False))

    passed = sum(1 for _, r in results if r)
    for name, result in results:
        print(f"  [{'PASS' if result else 'FAIL'}] {name}")
    print(f"\n{passed}/{len(results)} tests passed")

    return 0 if passed == len(results) else 1


if __name__ == '__main__':
    sys.exit(main())
