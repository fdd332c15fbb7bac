"""
SignageCore Database Models
SQLAlchemy ORM models for owners, devices, schedules, dayparts and live sessions
"""
from datetime import datetime, timedelta, timezone
from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
import enum
import json

db = SQLAlchemy()


def utcnow():
    """Current time as naive UTC (all timestamps are stored this way)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SubscriptionTier(enum.Enum):
    """Subscription tiers, ordered by level"""
    BASIC = 'basic'
    PRO = 'pro'
    ENTERPRISE = 'enterprise'


TIER_LEVELS = {
    SubscriptionTier.BASIC: 1,
    SubscriptionTier.PRO: 2,
    SubscriptionTier.ENTERPRISE: 3,
}

# Minimum tier required for each gated capability
CAPABILITY_TIERS = {
    'schedule': SubscriptionTier.BASIC,
    'display_now': SubscriptionTier.BASIC,
    'group_schedule': SubscriptionTier.PRO,
    'daypart': SubscriptionTier.PRO,
    'live_broadcast': SubscriptionTier.PRO,
    'emergency_broadcast': SubscriptionTier.ENTERPRISE,
}


class User(UserMixin, db.Model):
    """Content owner; authentication itself is handled elsewhere"""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    email = db.Column(db.String(120), unique=True, nullable=True)
    timezone = db.Column(db.String(64), default='UTC', nullable=False)
    subscription_tier = db.Column(db.Enum(SubscriptionTier), default=SubscriptionTier.BASIC, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    is_active = db.Column(db.Boolean, default=True)  # type: ignore

    # Relationships
    devices = db.relationship('Device', backref='owner', lazy='dynamic', cascade='all, delete-orphan')

    def has_capability(self, capability):
        """Check the subscription tier against the capability's minimum tier"""
        required = CAPABILITY_TIERS.get(capability)
        if required is None:
            return True
        tier = self.subscription_tier or SubscriptionTier.BASIC
        return TIER_LEVELS[tier] >= TIER_LEVELS[required]

    def __repr__(self):
        return f'<User {self.username} ({self.subscription_tier.value if self.subscription_tier else "basic"})>'


class Media(db.Model):
    """Uploaded media as returned by the content store"""
    __tablename__ = 'media'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    url = db.Column(db.String(500), nullable=False)
    media_type = db.Column(db.String(20), default='image', nullable=False)  # image, video
    title = db.Column(db.String(255), nullable=True)
    size_bytes = db.Column(db.Integer, nullable=True)
    duration_ms = db.Column(db.Integer, nullable=True)  # Detected duration hint
    thumbnail_url = db.Column(db.String(500), nullable=True)
    is_default = db.Column(db.Boolean, default=False, nullable=False)  # Owner's fallback content
    uploaded_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    owner = db.relationship('User', backref=db.backref('media', lazy='dynamic', cascade='all, delete-orphan'))

    def __repr__(self):
        return f'<Media {self.id} {self.media_type}>'


# Association table for device group membership
device_group_members = db.Table('device_group_members',
    db.Column('group_id', db.Integer, db.ForeignKey('device_groups.id', ondelete='CASCADE'), primary_key=True),
    db.Column('device_id', db.Integer, db.ForeignKey('devices.id', ondelete='CASCADE'), primary_key=True),
    db.Column('added_at', db.DateTime, default=utcnow)
)


class Device(db.Model):
    """Screen-attached display unit identified by a stable serial"""
    __tablename__ = 'devices'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=True, index=True)
    name = db.Column(db.String(100), nullable=False)
    serial = db.Column(db.String(100), unique=True, nullable=False, index=True)
    timezone = db.Column(db.String(64), default='UTC', nullable=False)
    is_paired = db.Column(db.Boolean, default=False, nullable=False)
    paired_at = db.Column(db.DateTime, nullable=True)
    daypart_enabled = db.Column(db.Boolean, default=False, nullable=False)
    registered_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    last_seen = db.Column(db.DateTime, nullable=True)

    @property
    def can_register(self):
        """Only paired devices with an owner may become reachable"""
        return bool(self.is_paired and self.user_id)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'serial': self.serial,
            'timezone': self.timezone,
            'is_paired': self.is_paired,
            'daypart_enabled': self.daypart_enabled,
            'last_seen': self.last_seen.isoformat() if self.last_seen else None
        }

    def __repr__(self):
        return f'<Device {self.name} ({self.serial})>'


class DeviceGroup(db.Model):
    """Owner-scoped group of devices, used for fan-out scheduling"""
    __tablename__ = 'device_groups'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    # Relationships
    devices = db.relationship('Device', secondary=device_group_members, backref=db.backref('groups', lazy='dynamic'))

    @property
    def device_count(self):
        """Get number of devices in this group"""
        return len(self.devices)

    def __repr__(self):
        return f'<DeviceGroup {self.name}>'


# ============================================================================
# SCHEDULING MODELS
# ============================================================================

class ScheduleStatus:
    PENDING = 'pending'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'

    ALL = (PENDING, COMPLETED, CANCELLED)
    TERMINAL = (COMPLETED, CANCELLED)


class ScheduleEntry(db.Model):
    """One-shot or repeating content display request"""
    __tablename__ = 'schedules'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)

    # Target (NULL device = all of owner's devices)
    device_id = db.Column(db.Integer, db.ForeignKey('devices.id', ondelete='CASCADE'), nullable=True, index=True)
    group_id = db.Column(db.Integer, db.ForeignKey('device_groups.id', ondelete='CASCADE'), nullable=True, index=True)
    from_group = db.Column(db.Boolean, default=False, nullable=False)  # Created by group fan-out

    # Content reference
    url = db.Column(db.String(500), nullable=True)
    display_type = db.Column(db.String(20), default='image', nullable=False)  # image, video, layout
    title = db.Column(db.String(255), nullable=True)
    rotation = db.Column(db.Integer, default=0, nullable=False)  # 0, 90, 180, 270
    mirror = db.Column(db.Boolean, default=False, nullable=False)
    muted = db.Column(db.Boolean, default=False, nullable=False)
    thumbnail_url = db.Column(db.String(500), nullable=True)
    layout_zones = db.Column(db.Text, nullable=True)  # JSON list, layout content only

    # Video metadata from the content store
    video_format = db.Column(db.String(50), nullable=True)
    video_resolution = db.Column(db.String(20), nullable=True)
    video_size_bytes = db.Column(db.Integer, nullable=True)
    video_duration_ms = db.Column(db.Integer, nullable=True)

    # Timing: scheduled_time is absolute UTC, timezone is for display only
    scheduled_time = db.Column(db.DateTime, nullable=False, index=True)
    timezone = db.Column(db.String(64), default='UTC', nullable=False)
    duration_ms = db.Column(db.Integer, default=60000, nullable=False)
    repeat_type = db.Column(db.String(20), default='once', nullable=False)  # once, daily, weekly, monthly, yearly

    status = db.Column(db.String(20), default=ScheduleStatus.PENDING, nullable=False, index=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    owner = db.relationship('User', backref=db.backref('schedules', lazy='dynamic', cascade='all, delete-orphan'))
    device = db.relationship('Device', backref=db.backref('schedules', lazy='dynamic', cascade='all, delete-orphan'))
    group = db.relationship('DeviceGroup', backref=db.backref('schedules', lazy='dynamic', cascade='all, delete-orphan'))

    @property
    def end_time(self):
        """Exclusive end of the display window"""
        return self.scheduled_time + timedelta(milliseconds=self.duration_ms)

    @property
    def zones(self):
        if not self.layout_zones:
            return []
        return json.loads(self.layout_zones)

    @property
    def is_pending(self):
        return self.status == ScheduleStatus.PENDING

    @property
    def target_description(self):
        """Get description of schedule target"""
        if self.device:
            return f"Device: {self.device.name}"
        elif self.group:
            return f"Group: {self.group.name}"
        return "All Devices"

    def to_dict(self):
        data = {
            'id': self.id,
            'user_id': self.user_id,
            'device_id': self.device_id,
            'group_id': self.group_id,
            'from_group': self.from_group,
            'url': self.url,
            'display_type': self.display_type,
            'title': self.title,
            'rotation': self.rotation,
            'mirror': self.mirror,
            'muted': self.muted,
            'thumbnail_url': self.thumbnail_url,
            'scheduled_time': self.scheduled_time.isoformat(),
            'end_time': self.end_time.isoformat(),
            'timezone': self.timezone,
            'duration': self.duration_ms,
            'repeat': self.repeat_type,
            'status': self.status,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }
        if self.display_type == 'layout':
            data['zones'] = self.zones
        if self.display_type == 'video':
            data['video'] = {
                'format': self.video_format,
                'resolution': self.video_resolution,
                'size_bytes': self.video_size_bytes,
                'duration_ms': self.video_duration_ms
            }
        return data

    def __repr__(self):
        return f'<ScheduleEntry {self.id} {self.repeat_type} at {self.scheduled_time} ({self.status})>'


class DisplayHistory(db.Model):
    """Audit log of content pushed to displays"""
    __tablename__ = 'display_history'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    device_id = db.Column(db.Integer, db.ForeignKey('devices.id', ondelete='CASCADE'), nullable=True)
    schedule_id = db.Column(db.Integer, db.ForeignKey('schedules.id', ondelete='SET NULL'), nullable=True, index=True)
    url = db.Column(db.String(500), nullable=True)
    display_type = db.Column(db.String(20), nullable=False)
    displayed_at = db.Column(db.DateTime, nullable=False, index=True)
    duration_ms = db.Column(db.Integer, nullable=False)
    rotation = db.Column(db.Integer, default=0)
    mirror = db.Column(db.Boolean, default=False)
    source = db.Column(db.String(20), default='schedule', nullable=False)  # schedule, immediate
    displays_sent = db.Column(db.Integer, default=0, nullable=False)

    def __repr__(self):
        return f'<DisplayHistory {self.source} schedule={self.schedule_id} at {self.displayed_at}>'


class CurrentDisplay(db.Model):
    """Singleton snapshot of the content currently on screen, for restart recovery"""
    __tablename__ = 'current_display'

    id = db.Column(db.Integer, primary_key=True, default=1)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    schedule_id = db.Column(db.Integer, db.ForeignKey('schedules.id', ondelete='SET NULL'), nullable=True)
    payload = db.Column(db.Text, nullable=False)  # JSON content-change message
    displayed_at = db.Column(db.DateTime, nullable=False)
    duration_ms = db.Column(db.Integer, nullable=False)
    clear_at = db.Column(db.DateTime, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        db.CheckConstraint('id = 1', name='single_row'),
    )

    def __repr__(self):
        return f'<CurrentDisplay owner={self.user_id} clear_at={self.clear_at}>'


# ============================================================================
# DAYPART MODELS
# ============================================================================

class DaypartContent(db.Model):
    """Per-device content choice for a daypart window"""
    __tablename__ = 'daypart_content'

    id = db.Column(db.Integer, primary_key=True)
    device_id = db.Column(db.Integer, db.ForeignKey('devices.id', ondelete='CASCADE'), nullable=False, index=True)
    daypart_type = db.Column(db.String(20), nullable=False)  # BREAKFAST, LUNCH, DINNER, LATE_NIGHT
    media_id = db.Column(db.Integer, db.ForeignKey('media.id', ondelete='CASCADE'), nullable=True)
    url = db.Column(db.String(500), nullable=True)
    media_type = db.Column(db.String(20), default='image', nullable=False)
    rotation = db.Column(db.Integer, default=0, nullable=False)
    mirror = db.Column(db.Boolean, default=False, nullable=False)
    duration_ms = db.Column(db.Integer, nullable=True)
    priority = db.Column(db.Integer, default=0, nullable=False)  # Lower = preferred
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    device = db.relationship('Device', backref=db.backref('daypart_content', lazy='dynamic', cascade='all, delete-orphan'))
    media = db.relationship('Media')

    @property
    def content_url(self):
        if self.media is not None:
            return self.media.url
        return self.url

    def to_dict(self):
        return {
            'id': self.id,
            'device_id': self.device_id,
            'daypart_type': self.daypart_type,
            'media_id': self.media_id,
            'url': self.content_url,
            'type': self.media_type,
            'rotation': self.rotation,
            'mirror': self.mirror,
            'duration': self.duration_ms,
            'priority': self.priority
        }

    def __repr__(self):
        return f'<DaypartContent device={self.device_id} {self.daypart_type} p={self.priority}>'


class DaypartLog(db.Model):
    """Audit row written each time daypart content is applied to a device"""
    __tablename__ = 'daypart_logs'

    id = db.Column(db.Integer, primary_key=True)
    device_id = db.Column(db.Integer, db.ForeignKey('devices.id', ondelete='CASCADE'), nullable=False, index=True)
    daypart_type = db.Column(db.String(20), nullable=False)
    content_id = db.Column(db.Integer, nullable=True)
    content_url = db.Column(db.String(500), nullable=True)
    delivered = db.Column(db.Boolean, default=False, nullable=False)
    applied_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f'<DaypartLog device={self.device_id} {self.daypart_type}>'


# ============================================================================
# LIVE SESSION MODELS
# ============================================================================

class LiveSession(db.Model):
    """Live video broadcast from an owner to their displays"""
    __tablename__ = 'live_sessions'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    title = db.Column(db.String(200), default='Live Announcement', nullable=False)
    emergency = db.Column(db.Boolean, default=False, nullable=False)
    status = db.Column(db.String(20), default='active', nullable=False, index=True)  # active, ended
    started_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    ended_at = db.Column(db.DateTime, nullable=True)
    duration_seconds = db.Column(db.Integer, nullable=True)
    viewer_count = db.Column(db.Integer, default=0, nullable=False)
    peak_viewer_count = db.Column(db.Integer, default=0, nullable=False)

    # Recording (uploaded to the content store after the broadcast)
    recording_url = db.Column(db.String(500), nullable=True)
    recording_public_id = db.Column(db.String(200), nullable=True)
    thumbnail_url = db.Column(db.String(500), nullable=True)

    # Relationships
    targets = db.relationship('LiveSessionTarget', backref='session', lazy='dynamic', cascade='all, delete-orphan')
    viewers = db.relationship('LiveSessionViewer', backref='session', lazy='dynamic', cascade='all, delete-orphan')
    events = db.relationship('LiveSessionEvent', backref='session', lazy='dynamic', cascade='all, delete-orphan',
                             order_by='LiveSessionEvent.id')

    @property
    def is_active(self):
        return self.status == 'active'

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'emergency': self.emergency,
            'status': self.status,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'ended_at': self.ended_at.isoformat() if self.ended_at else None,
            'duration': self.duration_seconds,
            'viewer_count': self.viewer_count,
            'peak_viewer_count': self.peak_viewer_count,
            'recording_url': self.recording_url,
            'thumbnail_url': self.thumbnail_url
        }

    def __repr__(self):
        return f'<LiveSession {self.id} {self.status}{" EMERGENCY" if self.emergency else ""}>'


class LiveSessionTarget(db.Model):
    """Explicit device fan-out list (no rows = all of owner's devices)"""
    __tablename__ = 'live_session_targets'

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey('live_sessions.id', ondelete='CASCADE'), nullable=False, index=True)
    device_id = db.Column(db.Integer, db.ForeignKey('devices.id', ondelete='CASCADE'), nullable=False)

    __table_args__ = (
        db.UniqueConstraint('session_id', 'device_id', name='uix_session_target'),
    )


class LiveSessionViewer(db.Model):
    """A device's viewing interval within a live session"""
    __tablename__ = 'live_session_viewers'

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey('live_sessions.id', ondelete='CASCADE'), nullable=False, index=True)
    device_id = db.Column(db.Integer, db.ForeignKey('devices.id', ondelete='CASCADE'), nullable=False)
    joined_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    left_at = db.Column(db.DateTime, nullable=True)
    watch_duration_seconds = db.Column(db.Integer, nullable=True)
    connection_quality = db.Column(db.String(20), nullable=True)  # excellent, good, fair, poor

    device = db.relationship('Device')

    def finish(self, left_at):
        """Close the viewing interval and compute watch duration"""
        self.left_at = left_at
        self.watch_duration_seconds = max(0, int((left_at - self.joined_at).total_seconds()))

    def to_dict(self):
        return {
            'device_id': self.device_id,
            'device_name': self.device.name if self.device else None,
            'serial': self.device.serial if self.device else None,
            'joined_at': self.joined_at.isoformat(),
            'left_at': self.left_at.isoformat() if self.left_at else None,
            'watch_duration': self.watch_duration_seconds,
            'connection_quality': self.connection_quality
        }


class LiveSessionEvent(db.Model):
    """Append-only audit log of session lifecycle and quality events"""
    __tablename__ = 'live_session_events'

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey('live_sessions.id', ondelete='CASCADE'), nullable=False, index=True)
    event_type = db.Column(db.String(50), nullable=False)  # started, ended, viewer_joined, viewer_left, quality_degraded, error
    event_data = db.Column(db.Text, nullable=True)  # JSON
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    @property
    def data(self):
        return json.loads(self.event_data) if self.event_data else None

    def to_dict(self):
        return {
            'type': self.event_type,
            'timestamp': self.created_at.isoformat(),
            'data': self.data
        }
