"""
Live session lifecycle, fan-out targeting and signaling relay
"""
from datetime import timedelta

import pytest

from models import LiveSession, LiveSessionEvent, LiveSessionViewer, SubscriptionTier
from utils.live_session_db import LiveSessionError, LiveSessionStore
from utils.results import ErrorKind
from tests.conftest import connect, make_device, make_user

BROADCASTER = 'sid-broadcaster'


def _events(session_id):
    return [e.event_type for e in LiveSessionEvent.query.filter_by(session_id=session_id)
            .order_by(LiveSessionEvent.id).all()]


def _open(core, user, **data):
    result = core.live.open_session(user, data)
    assert result.ok, result.message
    return result.value['session']


def _start(core, user, **data):
    session = _open(core, user, **data)
    assert core.live.start_broadcast(session.id, user.id, BROADCASTER).ok
    return session


class TestLiveSessionStore:

    def test_create_writes_targets_and_start_event(self, app, owner):
        device = make_device(owner, 'A-1')

        session = LiveSessionStore.create_session(owner.id, 'Town hall', target_device_ids=[device.id])

        assert session.status == 'active'
        assert LiveSessionStore.get_targeted_device_ids(session.id) == [device.id]
        event = LiveSessionEvent.query.filter_by(session_id=session.id).one()
        assert event.event_type == 'started'
        assert event.data == {'title': 'Town hall', 'emergency': False, 'targetDevices': [device.id]}

    def test_end_closes_open_viewers(self, app, owner):
        a = make_device(owner, 'A-1')
        b = make_device(owner, 'B-1')
        session = LiveSessionStore.create_session(owner.id, 'T')
        started = session.started_at
        LiveSessionStore.add_viewer(session.id, a.id, now=started)
        LiveSessionStore.add_viewer(session.id, b.id, now=started + timedelta(seconds=10))
        LiveSessionStore.remove_viewer(session.id, b.id, now=started + timedelta(seconds=20))

        ended = LiveSessionStore.end_session(session.id, reason='done', now=started + timedelta(seconds=60))

        assert ended.status == 'ended'
        assert ended.duration_seconds == 60
        assert ended.viewer_count == 0
        assert ended.peak_viewer_count == 2
        assert LiveSessionViewer.query.filter_by(session_id=session.id, left_at=None).count() == 0
        watch = {v.device_id: v.watch_duration_seconds for v in LiveSessionViewer.query.all()}
        assert watch == {a.id: 60, b.id: 10}
        assert _events(session.id)[-1] == 'ended'

    def test_ending_twice_raises(self, app, owner):
        session = LiveSessionStore.create_session(owner.id, 'T')
        LiveSessionStore.end_session(session.id)

        with pytest.raises(LiveSessionError):
            LiveSessionStore.end_session(session.id)

    def test_history_is_paginated_newest_first(self, app, owner):
        ids = []
        for i in range(3):
            session = LiveSessionStore.create_session(owner.id, f'S{i}')
            LiveSessionStore.end_session(session.id)
            ids.append(session.id)

        page = LiveSessionStore.get_session_history(owner.id, limit=2, offset=0)
        assert page['total'] == 3
        assert page['has_more'] is True
        assert [s.id for s in page['sessions']] == [ids[2], ids[1]]

        last = LiveSessionStore.get_session_history(owner.id, limit=2, offset=2)
        assert last['has_more'] is False
        assert [s.id for s in last['sessions']] == [ids[0]]

    def test_analytics_aggregate_watch_time(self, app, owner):
        a = make_device(owner, 'A-1')
        session = LiveSessionStore.create_session(owner.id, 'T')
        LiveSessionStore.add_viewer(session.id, a.id, now=session.started_at)
        LiveSessionStore.end_session(session.id, now=session.started_at + timedelta(seconds=30))

        analytics = LiveSessionStore.get_session_analytics(session.id)
        assert analytics['metrics'] == {'total_viewers': 1, 'peak_viewers': 1, 'average_watch_time': 30}
        assert [e['type'] for e in analytics['timeline']] == ['started', 'viewer_joined', 'ended']


class TestOpenSession:

    def test_second_active_session_is_rejected(self, app, core, owner):
        first = _open(core, owner)

        result = core.live.open_session(owner, {'emergency': True})

        assert result.kind == ErrorKind.CONFLICT
        assert result.details['session_id'] == first.id
        assert LiveSession.query.count() == 1

    def test_tier_gates(self, app, core):
        basic = make_user('basic', tier=SubscriptionTier.BASIC)
        pro = make_user('pro', tier=SubscriptionTier.PRO)

        assert core.live.open_session(basic, {}).kind == ErrorKind.FORBIDDEN
        assert core.live.open_session(pro, {'emergency': True}).kind == ErrorKind.FORBIDDEN
        assert core.live.open_session(pro, {}).ok

    def test_targets_are_filtered_to_owned_paired_devices(self, app, core, owner):
        mine = make_device(owner, 'A-1')
        unpaired = make_device(owner, 'B-1', paired=False)
        foreign = make_device(make_user('other'), 'E-1')

        result = core.live.open_session(owner, {'targetDisplays': [mine.id, unpaired.id, foreign.id]})

        assert result.ok
        assert result.value['targeted_displays'] == 1
        assert LiveSessionStore.get_targeted_device_ids(result.value['session'].id) == [mine.id]

    def test_no_valid_targets_is_a_validation_error(self, app, core, owner):
        foreign = make_device(make_user('other'), 'E-1')

        result = core.live.open_session(owner, {'target_devices': [foreign.id]})
        assert result.kind == ErrorKind.VALIDATION
        assert result.message == 'No valid target displays found'

    def test_default_title_and_all_devices(self, app, core, owner):
        result = core.live.open_session(owner, {'title': '   '})

        assert result.value['session'].title == 'Live Announcement'
        assert result.value['targeted_displays'] == 'all'


class TestBroadcast:

    def test_emergency_without_targets_reaches_all_owner_devices(self, app, core, transport, owner):
        c = make_device(owner, 'C-1')
        d = make_device(owner, 'D-1')
        e = make_device(make_user('other', tier=SubscriptionTier.ENTERPRISE), 'E-1')
        for device in (c, d, e):
            connect(core, device)

        session = _start(core, owner, emergency=True, title='Evacuate')

        started = dict(transport.events('live:broadcast-started'))
        assert set(started) == {'sid-C-1', 'sid-D-1'}
        assert started['sid-C-1']['emergency'] is True
        assert started['sid-C-1']['sessionId'] == session.id
        ready = transport.sent_to(BROADCASTER, 'live:broadcast-ready')[0]
        assert ready['devicesNotified'] == 2

    def test_explicit_targets_limit_fan_out(self, app, core, transport, owner):
        c = make_device(owner, 'C-1')
        d = make_device(owner, 'D-1')
        connect(core, c)
        connect(core, d)

        _start(core, owner, target_devices=[c.id])

        assert [sid for sid, _ in transport.events('live:broadcast-started')] == ['sid-C-1']

    def test_late_device_is_not_notified_but_can_join(self, app, core, transport, owner):
        session = _start(core, owner)
        assert transport.events('live:broadcast-started') == []

        late = make_device(owner, 'L-1')
        connect(core, late)
        result = core.live.join_session(session.id, 'sid-L-1')

        assert result.ok
        assert transport.events('live:broadcast-started') == []
        assert transport.sent_to('sid-L-1', 'live:viewer-ready')[0]['broadcasterId'] == BROADCASTER

    def test_start_on_other_owners_session_is_rejected(self, app, core, transport, owner):
        session = _open(core, owner)
        other = make_user('other', tier=SubscriptionTier.ENTERPRISE)

        result = core.live.start_broadcast(session.id, other.id, 'sid-x')
        assert result.kind == ErrorKind.FORBIDDEN
        assert transport.sent_to('sid-x', 'live:error')[0]['error'] == 'Invalid session'

    def test_start_on_ended_session_is_stale(self, app, core, owner):
        session = _open(core, owner)
        LiveSessionStore.end_session(session.id)

        assert core.live.start_broadcast(session.id, owner.id, BROADCASTER).kind == ErrorKind.STALE_SESSION


class TestViewers:

    def test_join_and_leave_maintain_counts(self, app, core, transport, owner):
        a = make_device(owner, 'A-1')
        b = make_device(owner, 'B-1')
        connect(core, a)
        connect(core, b)
        session = _start(core, owner)

        assert core.live.join_session(session.id, 'sid-A-1').value['viewer_count'] == 1
        assert core.live.join_session(session.id, 'sid-B-1').value['viewer_count'] == 2
        assert core.live.leave_session(session.id, 'sid-A-1').value['viewer_count'] == 1

        joined = transport.sent_to(BROADCASTER, 'live:viewer-joined')
        assert [m['displayId'] for m in joined] == [a.id, b.id]
        left = transport.sent_to(BROADCASTER, 'live:viewer-left')[0]
        assert left['viewerCount'] == 1
        assert 'reason' not in left

        row = LiveSessionStore.get_session(session.id)
        assert row.viewer_count == 1
        assert row.peak_viewer_count == 2

    def test_repeat_join_from_same_socket_is_counted_once(self, app, core, transport, owner):
        connect(core, make_device(owner, 'A-1'))
        session = _start(core, owner)

        assert core.live.join_session(session.id, 'sid-A-1').value['viewer_count'] == 1
        assert core.live.join_session(session.id, 'sid-A-1').value['viewer_count'] == 1

        row = LiveSessionStore.get_session(session.id)
        assert row.viewer_count == 1
        assert row.peak_viewer_count == 1
        assert LiveSessionViewer.query.filter_by(session_id=session.id).count() == 1
        assert len(transport.sent_to(BROADCASTER, 'live:viewer-joined')) == 1
        assert len(transport.sent_to('sid-A-1', 'live:viewer-ready')) == 2

    def test_late_disconnect_of_replaced_socket_keeps_new_viewer(self, app, core, owner):
        a = make_device(owner, 'A-1')
        connect(core, a, 'sid-old')
        session = _start(core, owner)
        core.live.join_session(session.id, 'sid-old')

        connect(core, a, 'sid-new')
        core.live.join_session(session.id, 'sid-new')
        core.registry.remove_session('sid-old')
        assert core.live.handle_disconnect('sid-old') == {'ended': 0, 'left': 1}

        stats = core.live.get_session_stats(session.id)
        row = LiveSessionStore.get_session(session.id)
        assert stats['viewers'] == [{'socketId': 'sid-new', 'displayId': a.id}]
        assert row.viewer_count == stats['viewerCount'] == 1
        open_rows = LiveSessionViewer.query.filter_by(session_id=session.id, left_at=None).all()
        assert len(open_rows) == 1

    def test_release_viewer_leaves_every_joined_session(self, app, core, transport, owner):
        connect(core, make_device(owner, 'A-1'))
        session = _start(core, owner)
        core.live.join_session(session.id, 'sid-A-1')

        assert core.live.release_viewer('sid-A-1') == 1
        assert core.live.release_viewer('sid-A-1') == 0

        assert transport.sent_to(BROADCASTER, 'live:viewer-left')[0]['reason'] == 'superseded'
        assert LiveSessionStore.get_session(session.id).viewer_count == 0
        assert core.live.get_session_stats(session.id)['viewerCount'] == 0

    def test_join_inactive_session_is_stale(self, app, core, transport, owner):
        connect(core, make_device(owner, 'A-1'))
        session = _open(core, owner)  # never started by a broadcaster

        result = core.live.join_session(session.id, 'sid-A-1')
        assert result.kind == ErrorKind.STALE_SESSION
        assert transport.sent_to('sid-A-1', 'live:error')

    def test_untargeted_device_cannot_join(self, app, core, owner):
        a = make_device(owner, 'A-1')
        b = make_device(owner, 'B-1')
        connect(core, a)
        connect(core, b)
        session = _start(core, owner, target_devices=[a.id])

        assert core.live.join_session(session.id, 'sid-B-1').kind == ErrorKind.FORBIDDEN

    def test_other_owners_device_cannot_join(self, app, core, owner):
        foreign = make_device(make_user('other'), 'E-1')
        connect(core, foreign)
        session = _start(core, owner)

        assert core.live.join_session(session.id, 'sid-E-1').kind == ErrorKind.FORBIDDEN

    def test_quality_degradation_warns_broadcaster(self, app, core, transport, owner):
        a = make_device(owner, 'A-1')
        connect(core, a)
        session = _start(core, owner)
        core.live.join_session(session.id, 'sid-A-1')

        core.live.report_quality(session.id, 'sid-A-1', 'good')
        assert transport.sent_to(BROADCASTER, 'live:quality-warning') == []

        core.live.report_quality(session.id, 'sid-A-1', 'poor', {'packetLoss': 0.2})
        warning = transport.sent_to(BROADCASTER, 'live:quality-warning')[0]
        assert warning == {'displayId': a.id, 'quality': 'poor', 'stats': {'packetLoss': 0.2}}
        assert LiveSessionViewer.query.one().connection_quality == 'poor'
        assert 'quality_degraded' in _events(session.id)

    def test_client_errors_are_logged_as_events(self, app, core, owner):
        session = _start(core, owner)

        assert core.live.report_error(session.id, 'sid-A-1', 'ICE failed', {'stage': 'connect'})
        event = LiveSessionEvent.query.filter_by(session_id=session.id, event_type='error').one()
        assert event.data == {'error': 'ICE failed', 'context': {'stage': 'connect'}, 'socketId': 'sid-A-1'}

    def test_stats_list_viewers(self, app, core, owner):
        a = make_device(owner, 'A-1')
        connect(core, a)
        session = _start(core, owner)
        core.live.join_session(session.id, 'sid-A-1')

        stats = core.live.get_session_stats(session.id, now=session.started_at + timedelta(seconds=5))
        assert stats['broadcaster'] == BROADCASTER
        assert stats['viewers'] == [{'socketId': 'sid-A-1', 'displayId': a.id}]
        assert stats['uptime'] == 5


class TestEndingSessions:

    def test_only_broadcaster_session_may_end(self, app, core, transport, owner):
        session = _start(core, owner)

        result = core.live.end_broadcast(session.id, 'sid-intruder')

        assert result.kind == ErrorKind.STALE_SESSION
        assert transport.sent_to('sid-intruder', 'live:error')[0]['error'] == 'Not authorized'
        assert LiveSessionStore.get_session(session.id).status == 'active'

    def test_end_notifies_viewers_and_finalizes(self, app, core, transport, owner):
        a = make_device(owner, 'A-1')
        connect(core, a)
        session = _start(core, owner)
        core.live.join_session(session.id, 'sid-A-1')

        result = core.live.end_broadcast(session.id, BROADCASTER)

        assert result.ok
        assert transport.sent_to('sid-A-1', 'live:broadcast-ended')[0]['reason'] == 'Broadcaster ended session'
        assert session.id not in core.live.active_sessions
        row = LiveSessionStore.get_session(session.id)
        assert row.status == 'ended'
        assert row.viewer_count == 0
        assert LiveSessionViewer.query.filter_by(left_at=None).count() == 0
        assert _events(session.id) == ['started', 'viewer_joined', 'ended']

    def test_broadcaster_disconnect_ends_session(self, app, core, transport, owner):
        connect(core, make_device(owner, 'A-1'))
        session = _start(core, owner)
        core.live.join_session(session.id, 'sid-A-1')

        assert core.live.handle_disconnect(BROADCASTER) == {'ended': 1, 'left': 0}
        assert LiveSessionStore.get_session(session.id).status == 'ended'
        assert transport.sent_to('sid-A-1', 'live:broadcast-ended')[0]['reason'] == 'Broadcaster disconnected'

    def test_viewer_disconnect_leaves_session(self, app, core, transport, owner):
        connect(core, make_device(owner, 'A-1'))
        session = _start(core, owner)
        core.live.join_session(session.id, 'sid-A-1')

        assert core.live.handle_disconnect('sid-A-1') == {'ended': 0, 'left': 1}
        assert transport.sent_to(BROADCASTER, 'live:viewer-left')[0]['reason'] == 'disconnected'
        assert LiveSessionStore.get_session(session.id).status == 'active'

    def test_owner_close_without_broadcaster(self, app, core, owner):
        session = _open(core, owner)

        assert core.live.close_session(owner, session.id).ok
        assert core.live.close_session(owner, session.id).kind == ErrorKind.VALIDATION

    def test_close_by_other_owner_is_forbidden(self, app, core, owner):
        session = _open(core, owner)
        other = make_user('other', tier=SubscriptionTier.ENTERPRISE)

        assert core.live.close_session(other, session.id).kind == ErrorKind.FORBIDDEN


class TestSignalingRelay:

    def test_offer_answer_and_candidates_are_relayed_verbatim(self, app, core, transport):
        offer = {'type': 'offer', 'sdp': 'v=0...'}
        core.live.relay_offer(BROADCASTER, {'sessionId': 1, 'viewerId': 'sid-A-1', 'offer': offer})
        core.live.relay_answer('sid-A-1', {'sessionId': 1, 'broadcasterId': BROADCASTER, 'answer': {'sdp': 'a'}})
        core.live.relay_ice_candidate('sid-A-1', {'sessionId': 1, 'targetId': BROADCASTER, 'candidate': 'c1'})

        assert transport.sent_to('sid-A-1', 'live:offer') == [
            {'sessionId': 1, 'broadcasterId': BROADCASTER, 'offer': offer}]
        assert transport.sent_to(BROADCASTER, 'live:answer')[0]['viewerId'] == 'sid-A-1'
        assert transport.sent_to(BROADCASTER, 'live:ice-candidate')[0] == {
            'sessionId': 1, 'senderId': 'sid-A-1', 'candidate': 'c1'}

    def test_missing_target_is_rejected(self, app, core, transport):
        assert core.live.relay_offer(BROADCASTER, {'offer': {}}).kind == ErrorKind.VALIDATION
        assert transport.pushes == []


class TestEmergencyOverride:

    def test_registering_device_is_told_to_join(self, app, core, transport, owner):
        session = _start(core, owner, emergency=True, title='Evacuate')
        conn = connect(core, make_device(owner, 'A-1'))

        assert core.live.emergency_override(conn)
        override = transport.sent_to('sid-A-1', 'live:emergency-override')[0]
        assert override['sessionId'] == session.id
        assert override['title'] == 'Evacuate'

    def test_untargeted_device_is_not_overridden(self, app, core, owner):
        a = make_device(owner, 'A-1')
        b = make_device(owner, 'B-1')
        _start(core, owner, emergency=True, target_devices=[a.id])

        assert not core.live.emergency_override(connect(core, b))
        assert core.live.emergency_override(connect(core, a))

    def test_regular_broadcast_does_not_override(self, app, core, owner):
        _start(core, owner)
        assert not core.live.emergency_override(connect(core, make_device(owner, 'A-1')))
