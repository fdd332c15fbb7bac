"""
SignageCore Test Configuration

Shared fixtures: an app on in-memory SQLite, a recording push transport,
model factories and logged-in HTTP clients.
"""
from datetime import datetime

import pytest
from flask import g

from app import create_app, get_core, socketio
from models import db as _db, Device, DeviceGroup, Media, SubscriptionTier, User, utcnow


class RecordingTransport:
    """Push transport that records every push instead of emitting it"""

    def __init__(self):
        self.pushes = []
        self.unreachable = set()

    def push(self, session_id, event, payload):
        if session_id in self.unreachable:
            return False
        self.pushes.append((session_id, event, payload))
        return True

    def sent_to(self, session_id, event=None):
        return [p for (sid, e, p) in self.pushes if sid == session_id and (event is None or e == event)]

    def events(self, event):
        return [(sid, p) for (sid, e, p) in self.pushes if e == event]

    def clear(self):
        self.pushes.clear()


# ============ Application Fixtures ============


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def app(transport):
    """App wired to the recording transport"""
    app = create_app('testing', transport=transport)
    with app.app_context():
        _db.create_all()
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def socket_app():
    """App wired to the real Socket.IO transport, for end-to-end tests"""
    app = create_app('testing')
    with app.app_context():
        _db.create_all()
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def db(app):
    return _db


@pytest.fixture
def core(app):
    return get_core(app)


@pytest.fixture
def client(app):
    return app.test_client()


def login(client, user):
    # The app context is shared across requests, so drop any user cached on g
    g.pop('_login_user', None)
    with client.session_transaction() as sess:
        sess['_user_id'] = str(user.id)
        sess['_fresh'] = True
    return client


def socket_client(app, flask_client=None):
    return socketio.test_client(app, flask_test_client=flask_client)


# ============ Factories ============


def make_user(username='owner', tier=SubscriptionTier.BASIC, timezone='UTC'):
    user = User(username=username, email=f'{username}@example.com', timezone=timezone, subscription_tier=tier)
    _db.session.add(user)
    _db.session.commit()
    return user


def make_device(owner, serial, name=None, paired=True, timezone='UTC', daypart_enabled=False):
    device = Device(
        user_id=owner.id if owner else None,
        name=name or serial,
        serial=serial,
        timezone=timezone,
        is_paired=paired,
        paired_at=utcnow() if paired else None,
        daypart_enabled=daypart_enabled
    )
    _db.session.add(device)
    _db.session.commit()
    return device


def make_group(owner, name, devices):
    group = DeviceGroup(user_id=owner.id, name=name)
    group.devices.extend(devices)
    _db.session.add(group)
    _db.session.commit()
    return group


def make_media(owner, url, media_type='image', is_default=False, duration_ms=None):
    media = Media(user_id=owner.id, url=url, media_type=media_type, is_default=is_default,
                  duration_ms=duration_ms)
    _db.session.add(media)
    _db.session.commit()
    return media


def connect(core, device, session_id=None):
    """Register a device in the connection registry as the socket handler would"""
    conn, _ = core.registry.register(
        device.serial, session_id or f'sid-{device.serial}', device.user_id, device.id,
        device.name, device.timezone
    )
    return conn


T0 = datetime(2025, 1, 1, 10, 0, 0)


@pytest.fixture
def owner(app):
    return make_user('owner', tier=SubscriptionTier.ENTERPRISE)
