"""
tests/test_scanner.py
Scan orchestrator end to end against a real SQLite store and a scripted
model backend.

Coverage:
  - windowing, batching, escalation, cost and message accounting
  - cursor advance and context-only messages on the next run
  - retention cleanup after each scanned or safety-listed chat
  - idempotent re-runs, per-chat failure isolation, pre-loop failure
  - media on paid plans vs skipped media on free plans
  - free plan disconnect, new contacts, suspicious groups
  - no source text in any persisted alert
"""

import json
from unittest.mock import MagicMock

import pytest

from fakes import (
    BASE_TS, DEEP_COST, FAST_COST, FakeClock, FakeLLM, finding, findings_json,
    make_classifier, message, seed_chat, subject, write_file,
)
from shomer.errors import AccountNotFound
from shomer.live_feed import LiveFeed
from shomer.media.analyzer import MediaAnalyzer
from shomer.models.record import ScanCursor
from shomer.models.risk import RiskLevel, Severity
from shomer.scanner import ScanLimits, ScanOrchestrator, first_unscanned_index

ACCOUNT = 'acct-1'


def _route(fast=None, deep=None, vision=None, contact=None):
    """Scripted replies per model; json_mode=False is the new-contact call."""
    def handler(req):
        if not req.json_mode:
            return contact
        if req.model == 'fast':
            return fast if fast is not None else findings_json()
        if req.model == 'deep':
            return deep if deep is not None else findings_json()
        if req.model == 'vision':
            return vision if vision is not None else json.dumps({'description': 'x', 'findings': []})
        return findings_json()
    return handler


def _orchestrator(store, llm, live_feed=None, media=True, **kwargs):
    classifier = make_classifier(llm)
    analyzer = MediaAnalyzer(classifier, runner=MagicMock(side_effect=FileNotFoundError)) if media else None
    return ScanOrchestrator(
        store, classifier,
        media_analyzer = analyzer,
        live_feed      = live_feed or MagicMock(spec=LiveFeed),
        clock          = FakeClock(),
        **kwargs,
    )


def _register(store, plan='basic'):
    profile = subject(plan=plan)
    store.upsert_account(profile)
    return profile


GROOMING_TRIAGE = findings_json(finding(
    severity='high', category='grooming', confidence=0.9,
    summary='An older contact is asking the child to keep their chats secret.',
))
GROOMING_DEEP = findings_json(finding(
    severity='critical', category='grooming', confidence=0.95,
    summary='An adult is building secrecy with the child and asking for photos.',
))


class TestFirstUnscannedIndex:

    def test_no_cursor(self):
        window = [message('c', i) for i in range(3)]
        assert first_unscanned_index(window, None) == 0

    def test_cursor_message_present(self):
        window = [message('c', i) for i in range(5)]
        cursor = ScanCursor(ACCOUNT, 'c', window[2].timestamp, window[2].external_id)
        assert first_unscanned_index(window, cursor) == 3

    def test_cursor_message_pruned_falls_back_to_timestamp(self):
        window = [message('c', i) for i in range(10, 15)]
        cursor = ScanCursor(ACCOUNT, 'c', message('c', 12).timestamp, 'gone')
        assert first_unscanned_index(window, cursor) == 2

    def test_cursor_after_everything(self):
        window = [message('c', i) for i in range(3)]
        cursor = ScanCursor(ACCOUNT, 'c', BASE_TS + 10_000, 'gone')
        assert first_unscanned_index(window, cursor) == 3


class TestFirstScan:

    def test_sixty_messages_two_batches_escalated(self, store):
        _register(store)
        seed_chat(store, ACCOUNT, 'c1', 60)
        llm = FakeLLM(_route(fast=GROOMING_TRIAGE, deep=GROOMING_DEEP))
        result = _orchestrator(store, llm).run_scan(ACCOUNT)

        assert result.status == 'completed'
        assert result.chats_scanned == 1
        assert result.messages_scanned == 60
        assert result.messages_total == 60
        assert len(llm.calls_to('fast')) == 2
        assert len(llm.calls_to('deep')) == 2
        assert result.escalations == 2
        assert result.cost == pytest.approx(2 * (FAST_COST + DEEP_COST))
        # identical deep finding in both batches collapses to one alert
        assert len(result.alerts) == 1
        assert result.alerts[0].severity == Severity.CRITICAL

    def test_batches_and_context(self, store):
        _register(store)
        seed_chat(store, ACCOUNT, 'c1', 60)
        llm = FakeLLM(_route())
        _orchestrator(store, llm).run_scan(ACCOUNT)
        first, second = [r.user_prompt for r in llm.calls_to('fast')]
        assert 'NEW MESSAGES TO SCAN (50)' in first
        assert 'CONTEXT' not in first
        assert 'NEW MESSAGES TO SCAN (10)' in second
        assert 'CONTEXT (15 earlier messages)' in second

    def test_window_caps_at_150(self, store):
        _register(store)
        seed_chat(store, ACCOUNT, 'c1', 200)
        llm = FakeLLM(_route())
        result = _orchestrator(store, llm).run_scan(ACCOUNT)
        assert result.messages_scanned == 150
        assert len(llm.calls_to('fast')) == 3

    def test_cursor_and_cleanup(self, store):
        _register(store)
        msgs = seed_chat(store, ACCOUNT, 'c1', 60)
        _orchestrator(store, FakeLLM(_route())).run_scan(ACCOUNT)
        cursor = store.get_cursor(ACCOUNT, 'c1')
        assert cursor.last_scanned_message_id == msgs[-1].external_id
        assert cursor.last_scanned_timestamp == msgs[-1].timestamp
        assert store.message_count(ACCOUNT, 'c1') == 15

    def test_run_row_closed(self, store):
        _register(store)
        seed_chat(store, ACCOUNT, 'c1', 10)
        result = _orchestrator(store, FakeLLM(_route(fast=GROOMING_TRIAGE, deep=GROOMING_DEEP))).run_scan(ACCOUNT)
        run = store.get_scan_run(result.scan_run_id)
        assert run.status == 'completed'
        assert run.messages_scanned == 10
        assert run.alerts_found == 1
        assert run.model == 'fast'
        assert run.cost == pytest.approx(result.cost)

    def test_alert_feeds_aggregator(self, store):
        _register(store)
        seed_chat(store, ACCOUNT, 'c1', 10)
        _orchestrator(store, FakeLLM(_route(fast=GROOMING_TRIAGE, deep=GROOMING_DEEP))).run_scan(ACCOUNT)
        agg = store.get_aggregate(ACCOUNT, 'c1', 'grooming')
        assert agg.risk_level == RiskLevel.CRITICAL
        assert agg.hit_count == 1
        assert len(store.risk_events_for_category(ACCOUNT, 'grooming')) == 1

    def test_unknown_account(self, store):
        with pytest.raises(AccountNotFound):
            _orchestrator(store, FakeLLM()).run_scan('nobody')


class TestRescan:

    def test_unchanged_chat_skipped_at_zero_cost(self, store):
        _register(store)
        seed_chat(store, ACCOUNT, 'c1', 60)
        orch = _orchestrator(store, FakeLLM(_route(fast=GROOMING_TRIAGE, deep=GROOMING_DEEP)))
        orch.run_scan(ACCOUNT)
        llm2 = FakeLLM(_route(fast=GROOMING_TRIAGE, deep=GROOMING_DEEP))
        again = _orchestrator(store, llm2).run_scan(ACCOUNT)

        assert again.chats_skipped == 1
        assert again.chats_scanned == 0
        assert again.messages_scanned == 0
        assert again.cost == 0.0
        assert again.alerts == []
        assert llm2.requests == []
        assert store.get_aggregate(ACCOUNT, 'c1', 'grooming').hit_count == 1

    def test_only_new_messages_batched(self, store):
        _register(store)
        seed_chat(store, ACCOUNT, 'c1', 60)
        _orchestrator(store, FakeLLM(_route())).run_scan(ACCOUNT)
        new = seed_chat(store, ACCOUNT, 'c1', 5, start=60)

        llm = FakeLLM(_route())
        result = _orchestrator(store, llm).run_scan(ACCOUNT)
        assert result.messages_scanned == 5
        assert result.chats_scanned == 1
        prompt = llm.calls_to('fast')[0].user_prompt
        assert 'CONTEXT (15 earlier messages)' in prompt
        assert 'NEW MESSAGES TO SCAN (5)' in prompt
        assert store.get_cursor(ACCOUNT, 'c1').last_scanned_message_id == new[-1].external_id
        assert store.message_count(ACCOUNT, 'c1') == 15

    def test_same_finding_next_run_is_new_alert(self, store):
        _register(store)
        seed_chat(store, ACCOUNT, 'c1', 10)
        _orchestrator(store, FakeLLM(_route(fast=GROOMING_TRIAGE, deep=GROOMING_DEEP))).run_scan(ACCOUNT)
        seed_chat(store, ACCOUNT, 'c1', 3, start=10)
        second = _orchestrator(store, FakeLLM(_route(fast=GROOMING_TRIAGE, deep=GROOMING_DEEP))).run_scan(ACCOUNT)
        assert len(second.alerts) == 1
        assert store.get_aggregate(ACCOUNT, 'c1', 'grooming').hit_count == 2


class TestSafetyList:

    def test_listed_chat_skipped_and_cleaned(self, store):
        _register(store)
        seed_chat(store, ACCOUNT, 'mom', 40)
        store.add_safe_contact(ACCOUNT, 'mom')
        llm = FakeLLM(_route(fast=GROOMING_TRIAGE))
        result = _orchestrator(store, llm).run_scan(ACCOUNT)

        assert result.chats_skipped == 1
        assert result.chats_scanned == 0
        assert llm.requests == []
        assert store.message_count(ACCOUNT, 'mom') == 15
        assert store.get_cursor(ACCOUNT, 'mom') is None

    def test_group_with_listed_member_skipped(self, store):
        _register(store)
        seed_chat(store, ACCOUNT, 'family', 5, is_group=True)
        store.add_group_member(ACCOUNT, 'family', 'mom')
        store.add_safe_contact(ACCOUNT, 'mom')
        llm = FakeLLM(_route())
        result = _orchestrator(store, llm).run_scan(ACCOUNT)
        assert result.chats_skipped == 1
        assert llm.calls_to('fast') == []


class TestFailures:

    def test_one_chat_failing_does_not_stop_others(self, store):
        _register(store)
        seed_chat(store, ACCOUNT, 'good', 20)
        seed_chat(store, ACCOUNT, 'bad', 20, ts_offset=10_000)
        spy = MagicMock(wraps=store)

        def last_n(account_id, chat_id, n):
            if chat_id == 'bad':
                raise RuntimeError("corrupt page")
            return store.last_n_messages(account_id, chat_id, n)
        spy.last_n_messages.side_effect = last_n

        result = ScanOrchestrator(spy, make_classifier(FakeLLM(_route())), clock=FakeClock(),
                                  live_feed=MagicMock(spec=LiveFeed)).run_scan(ACCOUNT)
        assert result.status == 'completed'
        assert result.chats_failed == 1
        assert result.chats_scanned == 1
        assert store.get_cursor(ACCOUNT, 'bad') is None
        assert store.message_count(ACCOUNT, 'bad') == 20
        assert store.get_cursor(ACCOUNT, 'good') is not None

    def test_failure_before_chat_loop_marks_run_failed(self, store):
        _register(store, plan='free')
        seed_chat(store, ACCOUNT, 'c1', 5)
        spy = MagicMock(wraps=store)
        spy.distinct_chats.side_effect = RuntimeError("database is locked")
        feed = MagicMock(spec=LiveFeed)

        result = ScanOrchestrator(spy, make_classifier(FakeLLM()), live_feed=feed,
                                  clock=FakeClock()).run_scan(ACCOUNT)
        assert result.status == 'failed'
        assert 'RuntimeError' in result.error
        run = store.get_scan_run(result.scan_run_id)
        assert run.status == 'failed'
        assert run.error == result.error
        assert store.running_scan(ACCOUNT) is None
        feed.disconnect.assert_not_called()

    def test_model_outage_completes_with_no_findings(self, store):
        _register(store)
        seed_chat(store, ACCOUNT, 'c1', 10)
        result = _orchestrator(store, FakeLLM(lambda req: None)).run_scan(ACCOUNT)
        assert result.status == 'completed'
        assert result.alerts == []
        assert result.cost == 0.0


class TestPlans:

    def test_free_plan_disconnects_once(self, store):
        _register(store, plan='free')
        seed_chat(store, ACCOUNT, 'c1', 5)
        seed_chat(store, ACCOUNT, 'c2', 5)
        feed = MagicMock(spec=LiveFeed)
        _orchestrator(store, FakeLLM(_route()), live_feed=feed).run_scan(ACCOUNT)
        feed.disconnect.assert_called_once_with(ACCOUNT)

    def test_free_plan_disconnects_with_no_chats(self, store):
        _register(store, plan='free')
        feed = MagicMock(spec=LiveFeed)
        result = _orchestrator(store, FakeLLM(), live_feed=feed).run_scan(ACCOUNT)
        assert result.status == 'completed'
        feed.disconnect.assert_called_once_with(ACCOUNT)

    def test_disconnect_failure_is_not_a_scan_failure(self, store):
        _register(store, plan='free')
        feed = MagicMock(spec=LiveFeed)
        feed.disconnect.side_effect = ConnectionError("gone")
        result = _orchestrator(store, FakeLLM(), live_feed=feed).run_scan(ACCOUNT)
        assert result.status == 'completed'

    def test_paid_plan_keeps_connection(self, store):
        _register(store, plan='advanced')
        seed_chat(store, ACCOUNT, 'c1', 5)
        feed = MagicMock(spec=LiveFeed)
        _orchestrator(store, FakeLLM(_route()), live_feed=feed).run_scan(ACCOUNT)
        feed.disconnect.assert_not_called()

    def test_free_plan_counts_skipped_media(self, store, tmp_path):
        _register(store, plan='free')
        pic = write_file(tmp_path / 'p.jpg')
        for i in range(3):
            store.insert_message(ACCOUNT, message('c1', i, media_kind='image', media_path=str(pic)))
        store.insert_message(ACCOUNT, message('c1', 3))
        llm = FakeLLM(_route())
        result = _orchestrator(store, llm).run_scan(ACCOUNT)
        assert result.skipped_media == 3
        assert result.media_analyzed == 0
        assert llm.calls_to('vision') == []

    def test_paid_plan_analyzes_media(self, store, tmp_path):
        _register(store, plan='basic')
        pic = write_file(tmp_path / 'p.jpg')
        store.insert_message(ACCOUNT, message('c1', 0, media_kind='image', media_path=str(pic), body=''))
        store.insert_message(ACCOUNT, message('c1', 1))
        vision = json.dumps({
            'description': 'A knife on a table.',
            'findings': [finding(severity='critical', category='weapon', confidence=0.9,
                                 summary='A weapon is visible in a shared image.')],
        })
        result = _orchestrator(store, FakeLLM(_route(vision=vision))).run_scan(ACCOUNT)
        assert result.media_analyzed == 1
        assert result.skipped_media == 0
        assert [(a.category, a.source) for a in result.alerts] == [('weapon', 'media')]


class TestAfterLoop:

    def test_new_contact_assessed(self, store):
        _register(store)
        seed_chat(store, ACCOUNT, 'c1', 5, chat_name='Stranger')
        seed_chat(store, ACCOUNT, 'c2', 2, chat_name='Brief')
        llm = FakeLLM(_route(contact='Likely an older stranger; worth following.'))
        result = _orchestrator(store, llm).run_scan(ACCOUNT)
        by_name = {c.name: c for c in result.new_contacts}
        assert by_name['Stranger'].assessment.startswith('Likely')
        assert by_name['Brief'].assessment is None
        assert result.cost == pytest.approx(2 * FAST_COST + FAST_COST)

    def test_contacts_not_new_on_next_run(self, store):
        _register(store)
        seed_chat(store, ACCOUNT, 'c1', 5)
        _orchestrator(store, FakeLLM(_route())).run_scan(ACCOUNT)
        again = _orchestrator(store, FakeLLM(_route())).run_scan(ACCOUNT)
        assert again.new_contacts == []

    def test_leaking_assessment_dropped(self, store):
        _register(store)
        body = 'send me a picture of yourself tonight please'
        for i in range(4):
            store.insert_message(ACCOUNT, message('c1', i, body=body if i == 1 else None))
        store.upsert_contact(ACCOUNT, 'c1', 'Stranger', float(BASE_TS))
        llm = FakeLLM(_route(contact=f'They wrote: {body}'))
        result = _orchestrator(store, llm).run_scan(ACCOUNT)
        assert result.new_contacts[0].assessment is None

    def test_suspicious_group_first_alert(self, store):
        _register(store)
        seed_chat(store, ACCOUNT, 'class', 10, chat_name='Class 7B', is_group=True)
        seed_chat(store, ACCOUNT, 'dm', 10, chat_name='Dana', ts_offset=-5_000)
        triage = findings_json(
            finding(severity='medium', category='exclusion', confidence=0.55,
                    summary='Members are coordinating to leave someone out.'),
            finding(severity='medium', category='language', confidence=0.6,
                    summary='Degrading language is used repeatedly.'),
        )
        result = _orchestrator(store, FakeLLM(_route(fast=triage))).run_scan(ACCOUNT)
        assert len(result.suspicious_groups) == 1
        group = result.suspicious_groups[0]
        assert group.name == 'Class 7B'
        assert group.category == 'exclusion'


class TestPrivacy:

    def test_quoting_summary_never_persisted(self, store):
        _register(store)
        body = 'nobody in the class wants you around anymore'
        for i in range(6):
            store.insert_message(ACCOUNT, message('c1', i, body=body if i == 3 else None))
        quoting = findings_json(finding(
            severity='medium', category='exclusion', confidence=0.8,
            summary=f'The peer wrote "{body}".',
        ))
        result = _orchestrator(store, FakeLLM(_route(fast=quoting))).run_scan(ACCOUNT)
        assert len(result.alerts) == 1
        for alert in store.list_alerts(ACCOUNT):
            assert body not in alert.summary
            assert body not in alert.recommendation
        for event in store.risk_events_for_category(ACCOUNT, 'exclusion'):
            assert body not in event.summary

    def test_scan_result_has_no_message_bodies(self, store):
        _register(store)
        msgs = seed_chat(store, ACCOUNT, 'c1', 20)
        result = _orchestrator(store, FakeLLM(_route(fast=GROOMING_TRIAGE, deep=GROOMING_DEEP))).run_scan(ACCOUNT)
        dumped = repr(result)
        assert not any(m.body in dumped for m in msgs)


class TestChatOrder:

    def test_most_recent_chat_first(self, store):
        _register(store)
        seed_chat(store, ACCOUNT, 'quiet', 3, chat_name='Quiet Friend', ts_offset=0)
        seed_chat(store, ACCOUNT, 'busy', 3, chat_name='Busy Friend', ts_offset=50_000)
        llm = FakeLLM(_route())
        _orchestrator(store, llm, limits=ScanLimits()).run_scan(ACCOUNT)
        prompts = [r.user_prompt for r in llm.calls_to('fast')]
        assert 'Busy Friend' in prompts[0]
        assert 'Quiet Friend' in prompts[1]
