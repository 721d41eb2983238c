#!/usr/bin/env python3
"""
Tests for delivery dispatch.

Covers:
1. Signal bridge client (payload, timeout and error mapping)
2. Mentions (playerPhoneMap, fallback mention, UTF-16 offsets)
3. Timeout retried exactly once
4. Superseded sends abandoned, not failed; late older events dropped
5. Group alternate-id retry and group id resolution with write-back
6. Aggregate status

Run with: python tests/test_dispatch.py
"""

import asyncio
import sys
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import requests

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'worker'))

from dispatch import (  # noqa: E402
    DeliveryDispatcher,
    SignalBridge,
    add_mention,
    alternate_group_id,
    find_group_id,
    normalize_phone,
)
from errors import BridgeError, SendTimeout  # noqa: E402
from models import RenderedMessage, Subscriber  # noqa: E402

RENDERED = RenderedMessage(text_classic='Your turn, Alice.', text_fun='Alice! Battle stations!')


class FakeBridge:
    """Records sends; optional hook decides each call's outcome."""

    def __init__(self, on_send=None, groups=None):
        self.sent = []
        self.on_send = on_send
        self.groups = groups or []
        self._lock = threading.Lock()

    def send(self, recipients, message, mentions=None):
        with self._lock:
            self.sent.append({'recipients': recipients, 'message': message, 'mentions': mentions})
        if self.on_send:
            return self.on_send(recipients, message, mentions)
        return {'timestamp': 1}

    def list_groups(self):
        return self.groups


def make_dispatcher(bridge, store=None):
    return DeliveryDispatcher(bridge, store or MagicMock())


def run_dispatch(dispatcher, subscribers, current_player='Alice', rendered=RENDERED):
    return asyncio.run(dispatcher.dispatch('patch1', '100', subscribers, rendered, current_player))


# =============================================================================
# Helpers
# =============================================================================

def test_normalize_phone():
    print("\n[TEST] Phone normalization...")

    assert normalize_phone('(555) 123-4567') == '+5551234567'
    assert normalize_phone('+1 555 123 4567') == '+15551234567'
    assert normalize_phone('+15551234567') == '+15551234567'

    print("  PASS: Normalized")


def test_alternate_group_id():
    print("\n[TEST] Alternate group encoding...")

    assert alternate_group_id('group.abc=') == 'abc='
    assert alternate_group_id('abc=') == 'group.abc='

    print("  PASS: Prefix toggled")


def test_mention_offsets_are_utf16():
    print("\n[TEST] Mention offset in UTF-16 units...")

    text, mentions = add_mention('\U0001F3B2 Go', '+15550100')

    # The die emoji is 2 UTF-16 units, so "<die> Go " is 6
    assert mentions == [{'author': '+15550100', 'start': 6, 'length': 1}], f"Got {mentions}"
    assert text.endswith('\ufffc')

    print("  PASS: Offset counts surrogate pairs")


def test_find_group_id():
    print("\n[TEST] Group lookup...")

    groups = [
        {'name': 'Other', 'id': 'group.OTHER', 'internal_id': 'OTHER'},
        {'name': 'Wargroup', 'id': 'group.WAR', 'internal_id': 'WAR'},
    ]
    assert find_group_id(groups, 'WAR', None) == 'group.WAR'
    assert find_group_id(groups, None, 'Wargroup') == 'group.WAR'
    assert find_group_id(groups, 'NOPE', 'Nope') is None

    print("  PASS: Matched by internal id and name")


# =============================================================================
# Bridge client
# =============================================================================

def test_bridge_send_payload():
    print("\n[TEST] Bridge send payload...")

    resp = MagicMock(ok=True, status_code=201)
    resp.json.return_value = {'timestamp': '1700000000000'}
    bridge = SignalBridge('http://signal:8080/', '+15550000', timeout=30)

    mentions = [{'author': '+15550100', 'start': 5, 'length': 1}]
    with patch('dispatch.requests.post', return_value=resp) as post:
        bridge.send(['group.abc'], 'Hi! \ufffc', mentions)

    url = post.call_args.args[0]
    payload = post.call_args.kwargs['json']
    assert url == 'http://signal:8080/v2/send', f"Got {url}"
    assert payload == {
        'number': '+15550000',
        'message': 'Hi! \ufffc',
        'recipients': ['group.abc'],
        'mentions': mentions,
    }, f"Got {payload}"

    print("  PASS: /v2/send with mentions")


def test_bridge_errors_mapped():
    print("\n[TEST] Bridge error mapping...")

    bridge = SignalBridge('http://signal:8080', '+15550000')

    with patch('dispatch.requests.post', side_effect=requests.Timeout("read timed out")):
        try:
            bridge.send(['+15550100'], 'hi')
            assert False, "Should raise SendTimeout"
        except SendTimeout:
            pass

    resp = MagicMock(ok=False, status_code=400, text='bad')
    resp.json.return_value = {'error': 'Invalid group id'}
    with patch('dispatch.requests.post', return_value=resp):
        try:
            bridge.send(['group.x'], 'hi')
            assert False, "Should raise BridgeError"
        except SendTimeout:
            assert False, "400 is not a timeout"
        except BridgeError as e:
            assert e.status_code == 400
            assert 'Invalid group id' in str(e)

    print("  PASS: Timeout and non-2xx mapped")


# =============================================================================
# Dispatch
# =============================================================================

def test_single_dm_sent():
    print("\n[TEST] Single DM...")

    bridge = FakeBridge()
    sub = Subscriber(type='dm', handle='555-0100')
    result = run_dispatch(make_dispatcher(bridge), [sub])

    assert result.status == 'sent'
    assert bridge.sent[0]['recipients'] == ['+5550100'], f"Got {bridge.sent[0]}"
    assert bridge.sent[0]['message'] == RENDERED.text_classic
    assert not bridge.sent[0]['mentions'], "DMs carry no mentions"
    assert result.deliveries[0].sent_at is not None

    print("  PASS: Sent with normalized number")


def test_variant_follows_fun_flag():
    print("\n[TEST] Variant per subscriber...")

    bridge = FakeBridge()
    classic = Subscriber(type='dm', handle='+15550100')
    fun = Subscriber(type='dm', handle='+15550200', fun_enabled=True)
    result = run_dispatch(make_dispatcher(bridge), [classic, fun])

    by_recipient = {s['recipients'][0]: s['message'] for s in bridge.sent}
    assert by_recipient['+15550100'] == RENDERED.text_classic
    assert by_recipient['+15550200'] == RENDERED.text_fun
    assert [d.variant for d in result.deliveries] == ['classic', 'fun']

    print("  PASS: Each subscriber got their variant")


def test_group_mentions_mapped_player():
    print("\n[TEST] Group mention from playerPhoneMap...")

    bridge = FakeBridge()
    sub = Subscriber(
        type='group',
        handle='group.abc',
        group_id='group.abc',
        mentions=('+15550999',),
        player_phone_map=(('Alice', '+1 555 0100'),),
    )
    result = run_dispatch(make_dispatcher(bridge), [sub], current_player='alice')

    assert result.status == 'sent'
    sent = bridge.sent[0]
    assert sent['recipients'] == ['group.abc']
    assert len(sent['mentions']) == 1, f"Exactly one mention expected, got {sent['mentions']}"
    assert sent['mentions'][0]['author'] == '+15550100'
    assert sent['message'].endswith('\ufffc')

    print("  PASS: One mention for the current player")


def test_group_mention_falls_back_to_first():
    print("\n[TEST] Group mention fallback...")

    bridge = FakeBridge()
    sub = Subscriber(type='group', handle='group.abc', group_id='group.abc', mentions=('+15550999', '+15550888'))
    run_dispatch(make_dispatcher(bridge), [sub], current_player='Bob')

    assert [m['author'] for m in bridge.sent[0]['mentions']] == ['+15550999']

    print("  PASS: First configured mention used")


def test_timeout_retried_once():
    print("\n[TEST] Timeout retried once...")

    outcomes = [SendTimeout("slow"), {'timestamp': 1}]

    def on_send(recipients, message, mentions):
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    bridge = FakeBridge(on_send=on_send)
    result = run_dispatch(make_dispatcher(bridge), [Subscriber(type='dm', handle='+15550100')])

    assert len(bridge.sent) == 2, f"Expected 2 attempts, got {len(bridge.sent)}"
    assert result.status == 'sent'

    print("  PASS: Second attempt succeeded")


def test_timeout_twice_fails():
    print("\n[TEST] Two timeouts -> failed...")

    def on_send(recipients, message, mentions):
        raise SendTimeout("slow")

    bridge = FakeBridge(on_send=on_send)
    result = run_dispatch(make_dispatcher(bridge), [Subscriber(type='dm', handle='+15550100')])

    assert len(bridge.sent) == 2, "No more than one retry"
    assert result.status == 'failed'
    assert 'slow' in result.deliveries[0].error

    print("  PASS: Failed after one retry")


def test_partial_failure():
    print("\n[TEST] Partial failure...")

    def on_send(recipients, message, mentions):
        if recipients == ['+15550200']:
            raise BridgeError("bridge returned 400: unregistered user", 400)
        return {}

    bridge = FakeBridge(on_send=on_send)
    subs = [Subscriber(type='dm', handle='+15550100'), Subscriber(type='dm', handle='+15550200')]
    result = run_dispatch(make_dispatcher(bridge), subs)

    assert result.status == 'partial-failed'
    assert '+15550200' in result.error
    assert [d.status for d in result.deliveries] == ['sent', 'failed']

    print("  PASS: partial-failed with error")


def test_group_alternate_id_retry():
    print("\n[TEST] Group alternate id...")

    def on_send(recipients, message, mentions):
        if recipients == ['group.abc']:
            raise BridgeError("bridge returned 400: Invalid group id", 400)
        return {}

    bridge = FakeBridge(on_send=on_send)
    store = MagicMock()
    store.set_subscriber_group_id.return_value = True
    sub = Subscriber(type='group', handle='https://signal.group/#abc', group_id='group.abc')
    result = run_dispatch(make_dispatcher(bridge, store), [sub])

    assert result.status == 'sent'
    assert [s['recipients'] for s in bridge.sent] == [['group.abc'], ['abc']]
    store.set_subscriber_group_id.assert_called_once_with('patch1', sub.handle, 'abc')

    print("  PASS: Alternate id used and written back")


def test_group_id_resolved_from_bridge():
    print("\n[TEST] Group id resolution...")

    bridge = FakeBridge(groups=[{'name': 'Wargroup', 'id': 'group.WAR', 'internal_id': 'CjQKIA'}])
    store = MagicMock()
    sub = Subscriber(type='group', handle='https://signal.group/#CjQKIA')
    result = run_dispatch(make_dispatcher(bridge, store), [sub])

    assert result.status == 'sent'
    assert bridge.sent[0]['recipients'] == ['group.WAR']
    store.set_subscriber_group_id.assert_called_once_with('patch1', sub.handle, 'group.WAR')

    print("  PASS: Resolved and cached")


def test_write_back_failure_ignored():
    print("\n[TEST] Write-back failure is best-effort...")

    bridge = FakeBridge(groups=[{'name': 'Wargroup', 'id': 'group.WAR', 'internal_id': 'WAR'}])
    store = MagicMock()
    store.set_subscriber_group_id.side_effect = OSError("disk full")
    sub = Subscriber(type='group', handle='WAR')
    result = run_dispatch(make_dispatcher(bridge, store), [sub])

    assert result.status == 'sent', "Send should not fail because caching failed"

    print("  PASS: Delivery unaffected")


def test_superseded_send_not_failed():
    print("\n[TEST] Superseded send...")

    release = threading.Event()

    def on_send(recipients, message, mentions):
        if message == 'old turn':
            release.wait(5)
        return {}

    bridge = FakeBridge(on_send=on_send)
    dispatcher = make_dispatcher(bridge)
    sub = Subscriber(type='dm', handle='+15550100')

    async def scenario():
        first = asyncio.create_task(dispatcher.dispatch(
            'patch1', '100', [sub], RenderedMessage(text_classic='old turn'), None
        ))
        await asyncio.sleep(0.05)
        second = await dispatcher.dispatch(
            'patch1', '100', [sub], RenderedMessage(text_classic='new turn'), None
        )
        first_result = await first
        release.set()
        return first_result, second

    first_result, second = asyncio.run(scenario())

    assert first_result.cancelled == ['+15550100'], f"Got {first_result.cancelled}"
    assert not any(d.status == 'failed' for d in first_result.deliveries), "Superseded send is not a failure"
    assert first_result.status == 'cancelled', "Nothing reached anyone for the old event"
    assert second.status == 'sent'
    assert second.deliveries[0].handle == '+15550100'

    print("  PASS: Old send abandoned, new send delivered")


def test_stale_event_after_newer_is_dropped():
    print("\n[TEST] Older event reaching dispatch late...")

    bridge = FakeBridge()
    dispatcher = make_dispatcher(bridge)
    sub = Subscriber(type='dm', handle='+15550100')

    async def scenario():
        newer = await dispatcher.dispatch(
            'patch1', '100', [sub], RenderedMessage(text_classic='day 6'), None, 2
        )
        older = await dispatcher.dispatch(
            'patch1', '100', [sub], RenderedMessage(text_classic='day 5'), None, 1
        )
        return newer, older

    newer, older = asyncio.run(scenario())

    assert newer.status == 'sent'
    assert older.cancelled == ['+15550100'], f"Got {older.cancelled}"
    assert older.status == 'cancelled'
    assert [s['message'] for s in bridge.sent] == ['day 6'], "Stale text must not go out"

    # Ordering state is per game and cleared when the game ends
    dispatcher.forget_game('100')
    again = asyncio.run(dispatcher.dispatch(
        'patch1', '100', [sub], RenderedMessage(text_classic='day 5'), None, 1
    ))
    assert again.status == 'sent'

    print("  PASS: Dropped as cancelled, never sent")


# =============================================================================
# Main
# =============================================================================

def main():
    print("=" * 60)
    print("DISPATCH TESTS")
    print("=" * 60)

    tests = [
        ('phone normalization', test_normalize_phone),
        ('alternate group id', test_alternate_group_id),
        ('UTF-16 mention offsets', test_mention_offsets_are_utf16),
        ('group lookup', test_find_group_id),
        ('bridge payload', test_bridge_send_payload),
        ('bridge errors', test_bridge_errors_mapped),
        ('single DM', test_single_dm_sent),
        ('variant per subscriber', test_variant_follows_fun_flag),
        ('mapped mention', test_group_mentions_mapped_player),
        ('fallback mention', test_group_mention_falls_back_to_first),
        ('timeout retry', test_timeout_retried_once),
        ('timeout twice', test_timeout_twice_fails),
        ('partial failure', test_partial_failure),
        ('group alternate id', test_group_alternate_id_retry),
        ('group resolution', test_group_id_resolved_from_bridge),
        ('write-back best effort', test_write_back_failure_ignored),
        ('superseded send', test_superseded_send_not_failed),
        ('stale event dropped', test_stale_event_after_newer_is_dropped),
    ]

    results = []
    for name, test in tests:
        try:
            test()
            results.append((name, True))
        except AssertionError as e:
            print(f"  FAIL: {e}")
            results.append((name, False))

    print("\n" + "=" * 60)
    print("RESULTS:")
    print("=" * 60)

    passed = sum(1 for _, r in results if r)
    for name, result in results:
        print(f"  [{'PASS' if result else 'FAIL'}] {name}")
    print(f"\n{passed}/{len(results)} tests passed")

    return 0 if passed == len(results) else 1


if __name__ == '__main__':
    sys.exit(main())
