"""
Daypart windows and per-device content application
"""
from datetime import datetime, time

import pytest

from models import db, DaypartContent, DaypartLog, SubscriptionTier
from utils.daypart import get_current_daypart, set_daypart_content, set_daypart_mode
from utils.dispatch import CONTENT_EVENT
from utils.results import ErrorKind
from tests.conftest import connect, make_device, make_media, make_user


@pytest.mark.parametrize('clock, expected', [
    (time(6, 0), 'BREAKFAST'),
    (time(10, 59), 'BREAKFAST'),
    (time(11, 0), 'LUNCH'),
    (time(15, 59), 'LUNCH'),
    (time(16, 0), 'DINNER'),
    (time(21, 59), 'DINNER'),
    (time(22, 0), 'LATE_NIGHT'),
    (time(0, 0), 'LATE_NIGHT'),
    (time(5, 59), 'LATE_NIGHT'),
])
def test_window_boundaries(clock, expected):
    assert get_current_daypart(clock)['type'] == expected


def test_current_daypart_accepts_datetime():
    current = get_current_daypart(datetime(2025, 1, 1, 12, 30))
    assert current == {'type': 'LUNCH', 'name': 'Lunch', 'start': '11:00', 'end': '16:00'}


class TestDaypartEngine:

    def test_lowest_priority_number_wins(self, app, core, transport, owner):
        device = make_device(owner, 'A-1', daypart_enabled=True)
        connect(core, device)
        set_daypart_content(owner, device.id, {'daypart_type': 'lunch', 'url': 'https://cdn/second.jpg', 'priority': 5})
        set_daypart_content(owner, device.id, {'daypart_type': 'LUNCH', 'url': 'https://cdn/first.jpg', 'priority': 1})

        summary = core.daypart.check_and_apply(now=datetime(2025, 1, 1, 12, 0))

        assert summary == {'devices': 1, 'applied': 1, 'skipped': 0}
        message = transport.sent_to('sid-A-1', CONTENT_EVENT)[0]
        assert message['url'] == 'https://cdn/first.jpg'
        assert message['daypart'] == 'Lunch'

    def test_choice_without_content_gives_way_to_next_priority(self, app, core, transport, owner):
        device = make_device(owner, 'A-1', daypart_enabled=True)
        connect(core, device)
        db.session.add(DaypartContent(device_id=device.id, daypart_type='LUNCH', url=None, priority=0))
        db.session.commit()
        set_daypart_content(owner, device.id, {'daypart_type': 'LUNCH', 'url': 'https://cdn/backup.jpg', 'priority': 3})
        make_media(owner, 'https://cdn/default.jpg', is_default=True)

        core.daypart.check_and_apply(now=datetime(2025, 1, 1, 12, 0))

        assert transport.sent_to('sid-A-1', CONTENT_EVENT)[0]['url'] == 'https://cdn/backup.jpg'

    def test_falls_back_to_default_media(self, app, core, transport, owner):
        device = make_device(owner, 'A-1', daypart_enabled=True)
        connect(core, device)
        make_media(owner, 'https://cdn/default.jpg', is_default=True)

        core.daypart.check_and_apply(now=datetime(2025, 1, 1, 7, 0))

        assert transport.sent_to('sid-A-1', CONTENT_EVENT)[0]['url'] == 'https://cdn/default.jpg'

    def test_device_without_content_is_skipped(self, app, core, transport, owner):
        device = make_device(owner, 'A-1', daypart_enabled=True)
        connect(core, device)

        summary = core.daypart.check_and_apply(now=datetime(2025, 1, 1, 7, 0))

        assert summary['skipped'] == 1
        assert transport.pushes == []
        assert DaypartLog.query.count() == 0

    def test_disabled_and_unpaired_devices_are_ignored(self, app, core, owner):
        make_device(owner, 'A-1', daypart_enabled=False)
        make_device(owner, 'B-1', paired=False, daypart_enabled=True)

        assert core.daypart.check_and_apply(now=datetime(2025, 1, 1, 7, 0))['devices'] == 0

    def test_window_follows_device_timezone(self, app, core, transport, owner):
        device = make_device(owner, 'A-1', timezone='America/New_York', daypart_enabled=True)
        connect(core, device)
        set_daypart_content(owner, device.id, {'daypart_type': 'BREAKFAST', 'url': 'https://cdn/morning.jpg'})
        set_daypart_content(owner, device.id, {'daypart_type': 'LUNCH', 'url': 'https://cdn/noon.jpg'})

        # 12:00 UTC is 07:00 in New York in January
        core.daypart.check_and_apply(now=datetime(2025, 1, 1, 12, 0))

        assert transport.sent_to('sid-A-1', CONTENT_EVENT)[0]['url'] == 'https://cdn/morning.jpg'

    def test_log_records_delivery(self, app, core, owner):
        online = make_device(owner, 'A-1', daypart_enabled=True)
        offline = make_device(owner, 'B-1', daypart_enabled=True)
        connect(core, online)
        make_media(owner, 'https://cdn/default.jpg', is_default=True)

        core.daypart.check_and_apply(now=datetime(2025, 1, 1, 17, 0))

        logs = {log.device_id: log for log in DaypartLog.query.all()}
        assert logs[online.id].delivered is True
        assert logs[offline.id].delivered is False
        assert logs[online.id].daypart_type == 'DINNER'

    def test_media_choice_uses_media_url(self, app, core, transport, owner):
        device = make_device(owner, 'A-1', daypart_enabled=True)
        connect(core, device)
        media = make_media(owner, 'https://cdn/clip.mp4', media_type='video', duration_ms=30000)
        set_daypart_content(owner, device.id, {'daypart_type': 'DINNER', 'media_id': media.id})

        core.daypart.check_and_apply(now=datetime(2025, 1, 1, 18, 0))

        message = transport.sent_to('sid-A-1', CONTENT_EVENT)[0]
        assert message['url'] == 'https://cdn/clip.mp4'
        assert message['type'] == 'video'


class TestDaypartConfiguration:

    def test_enabling_requires_capability(self, app):
        basic = make_user('basic', tier=SubscriptionTier.BASIC)
        device = make_device(basic, 'A-1')

        result = set_daypart_mode(basic, device.id, True)
        assert result.kind == ErrorKind.FORBIDDEN

        assert set_daypart_mode(basic, device.id, False).ok

    def test_enable_toggles_flag(self, app, owner):
        device = make_device(owner, 'A-1')

        result = set_daypart_mode(owner, device.id, True)
        assert result.ok
        assert result.value.daypart_enabled is True

    def test_other_owners_device_is_not_found(self, app, owner):
        other = make_user('other')
        device = make_device(other, 'A-1')

        assert set_daypart_mode(owner, device.id, True).kind == ErrorKind.NOT_FOUND

    @pytest.mark.parametrize('payload', [
        {'daypart_type': 'BRUNCH', 'url': 'u'},
        {'daypart_type': 'LUNCH'},
        {'daypart_type': 'LUNCH', 'url': 'u', 'rotation': 45},
        {'daypart_type': 'LUNCH', 'url': 'u', 'duration': 'abc'},
        {'daypart_type': 'LUNCH', 'url': 'u', 'duration': -5},
    ])
    def test_invalid_content_is_rejected(self, app, owner, payload):
        device = make_device(owner, 'A-1')
        assert set_daypart_content(owner, device.id, payload).kind == ErrorKind.VALIDATION

    def test_duration_and_mirror_are_normalized(self, app, owner):
        device = make_device(owner, 'A-1')

        result = set_daypart_content(owner, device.id, {
            'daypart_type': 'LUNCH', 'url': 'u', 'mirror': 'false', 'duration': '15000'
        })

        assert result.ok
        assert result.value.mirror is False
        assert result.value.duration_ms == 15000
