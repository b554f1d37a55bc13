from functools import wraps
from collections import defaultdict
from typing import Optional, Tuple
from flask import Flask, render_template, request, redirect, url_for, flash, Response, abort, has_request_context
import os
import io
import csv
import logging
import secrets
from datetime import date, datetime, timedelta, timezone

from flask_sqlalchemy import SQLAlchemy
from flask_login import (
    LoginManager, UserMixin, login_user, logout_user,
    current_user, login_required
)
from flask_caching import Cache
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import generate_password_hash, check_password_hash
from sqlalchemy import or_, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import aliased

# -------------------- App setup --------------------
app = Flask(__name__)

# Writable ./instance folder for the default SQLite file
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
INSTANCE_DIR = os.path.join(BASE_DIR, "instance")
os.makedirs(INSTANCE_DIR, exist_ok=True)

# Secrets & DB config (env-overridable)
app.config["SECRET_KEY"] = os.environ.get(
    "FLASK_SECRET_KEY", "fallback-change-me")
app.config["SQLALCHEMY_DATABASE_URI"] = os.getenv(
    "DATABASE_URL",
    f"sqlite:///{os.path.join(INSTANCE_DIR, 'roster.db')}"
)
_engine_options = {
    "pool_pre_ping": True,
    "pool_recycle": 280,
}
if not app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite"):
    _engine_options.update({"pool_size": 5, "max_overflow": 5})
app.config["SQLALCHEMY_ENGINE_OPTIONS"] = _engine_options
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

app.config["CACHE_TYPE"] = os.getenv("CACHE_TYPE", "SimpleCache")
app.config["CACHE_DEFAULT_TIMEOUT"] = int(os.getenv("CACHE_DEFAULT_TIMEOUT", "120"))

app.config["PREFERRED_URL_SCHEME"] = "https"
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

logging.basicConfig(format="%(asctime)s %(levelname)s:%(message)s")
app.logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())

app.jinja_env.globals['now'] = lambda: datetime.now()


def utcnow():
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


# Database, login & cache
db = SQLAlchemy(app, session_options={"expire_on_commit": False})
login_manager = LoginManager(app)
login_manager.login_view = "login"
login_manager.login_message_category = "info"
cache = Cache(app)

# -------------------- Shift codes --------------------

SHIFT_INFO = {
    "N":   {"label": "Night",        "color": "#1f2937", "text_color": "#f3f4f6"},
    "M":   {"label": "Morning",      "color": "#dbeafe", "text_color": "#1e3a8a"},
    "E":   {"label": "Evening",      "color": "#fee2e2", "text_color": "#991b1b"},
    "O":   {"label": "Off",          "color": "#f3f4f6", "text_color": "#374151"},
    "MOT": {"label": "Morning OT",   "color": "#e0f2fe", "text_color": "#075985"},
    "NOT": {"label": "Night OT",     "color": "#111827", "text_color": "#f9fafb"},
    "AL":  {"label": "Annual Leave", "color": "#fef9c3", "text_color": "#92400e"},
    "CTR": {"label": "Control Room", "color": "#ede9fe", "text_color": "#5b21b6"},
    "CG":  {"label": "Call G",       "color": "#dcfce7", "text_color": "#065f46"},
    "EL":  {"label": "Emergency Lv", "color": "#ffe4e6", "text_color": "#9f1239"},
    "TR":  {"label": "Training",     "color": "#cffafe", "text_color": "#155e75"},
    "MT":  {"label": "Meeting",      "color": "#fae8ff", "text_color": "#86198f"},
    "MC":  {"label": "Medical",      "color": "#fee2e2", "text_color": "#7f1d1d"},
}
SHIFT_CODES = tuple(SHIFT_INFO)
OFF_CODE = "O"
EMPTY_CELL = "-"

DEFAULT_PATTERN_NAME = "Default 15-day"
DEFAULT_PATTERN = ("N", "N", "N", "O", "O", "E", "E", "E",
                   "O", "O", "M", "M", "M", "O", "O")
# Day 0 of every pattern cycle; rotation runs on across month ends
PATTERN_EPOCH = date(2024, 1, 1)

# Generation never overwrites cells written by hand or by an approved exchange
LOCKED_SOURCES = {"manual", "exchange"}

EXCHANGE_PENDING = "pending"
EXCHANGE_APPROVED = "approved"
EXCHANGE_REJECTED = "rejected"

EVENT_TYPES = ("meeting", "training", "holiday", "other")

MIN_PASSWORD_LENGTH = 6
MAX_GENERATE_DAYS = 366
ADMIN_SHIFT_LIMIT = 50

# -------------------- Errors --------------------


class RosterError(Exception):
    """Base class for errors reported back to the user as a flash message."""


class ValidationError(RosterError):
    pass


class ShiftNotFound(RosterError):
    pass


class InvalidTransition(RosterError):
    pass


class NotAllowed(RosterError):
    pass


class RosterGenerationError(RosterError):
    pass


class OrderingError(RosterError):
    pass


class AuthenticationError(RosterError):
    pass


class AccountInactive(AuthenticationError):
    pass

# -------------------- Models --------------------


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return bool(self.password_hash) and check_password_hash(self.password_hash, password)

    # Auth
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False, default="")
    must_change_password = db.Column(db.Boolean, nullable=False, default=False)

    # Overrides UserMixin.is_active so Flask-Login refuses deactivated accounts
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_admin = db.Column(db.Boolean, nullable=False, default=False)

    full_name = db.Column(db.String(120), nullable=False)
    grade = db.Column(db.String(20), nullable=False, default="")
    phone = db.Column(db.String(30), nullable=True)
    email = db.Column(db.String(120), unique=True, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)


class Shift(db.Model):
    __tablename__ = "shifts"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), index=True, nullable=False)
    user = db.relationship("User", backref="shifts")
    day = db.Column(db.Date, index=True, nullable=False)
    shift_code = db.Column(db.String(5), nullable=False)
    # auto / manual / exchange
    source = db.Column(db.String(10), nullable=False, default="auto")
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)
    __table_args__ = (db.UniqueConstraint(
        "user_id", "day", name="uniq_shift_user_day"),)


class ShiftExchange(db.Model):
    __tablename__ = "shift_exchanges"

    id = db.Column(db.Integer, primary_key=True)
    requester_id = db.Column(db.Integer, db.ForeignKey("users.id"), index=True, nullable=False)
    target_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), index=True, nullable=False)
    original_shift_id = db.Column(db.Integer, db.ForeignKey("shifts.id"), nullable=False)
    target_shift_id = db.Column(db.Integer, db.ForeignKey("shifts.id"), nullable=False)
    # pending/approved/rejected
    status = db.Column(db.String(20), nullable=False, default=EXCHANGE_PENDING, index=True)
    reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    decided_by_id = db.Column(db.Integer)
    decided_at = db.Column(db.DateTime)

    requester = db.relationship("User", foreign_keys=[requester_id])
    target_user = db.relationship("User", foreign_keys=[target_user_id])

    @property
    def is_terminal(self) -> bool:
        return self.status in (EXCHANGE_APPROVED, EXCHANGE_REJECTED)


class Event(db.Model):
    __tablename__ = "events"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(120), nullable=False)
    day = db.Column(db.Date, index=True, nullable=False)
    type = db.Column(db.String(20), nullable=False, default="other")
    created_by = db.Column(db.Integer)


class StaffOrdering(db.Model):
    __tablename__ = "staff_ordering"

    id = db.Column(db.Integer, primary_key=True)
    month_year = db.Column(db.String(7), index=True, nullable=False)  # 'YYYY-MM'
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    user = db.relationship("User")
    order_position = db.Column(db.Integer, nullable=False)
    created_by = db.Column(db.Integer)
    __table_args__ = (db.UniqueConstraint(
        "month_year", "user_id", name="uniq_ordering_month_user"),)


class RosterPattern(db.Model):
    __tablename__ = "roster_patterns"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(60), unique=True, nullable=False)
    codes_csv = db.Column(db.String(400), nullable=False)

    @property
    def codes(self) -> tuple:
        return tuple(c for c in (self.codes_csv or "").split(",") if c)


class ChangeLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    when = db.Column(db.DateTime, nullable=False,
                     default=utcnow, index=True)
    who_user_id = db.Column(db.Integer, index=True)
    entity_type = db.Column(db.String(40), index=True)
    entity_id = db.Column(db.Integer, index=True)
    field = db.Column(db.String(40))
    old_value = db.Column(db.Text)
    new_value = db.Column(db.Text)
    context_month = db.Column(db.String(7), index=True)  # 'YYYY-MM'
    note = db.Column(db.Text, default="")

# -------------------- Login --------------------


@login_manager.user_loader
def load_user(user_id):
    # Re-read every request: a deactivated account drops out of its session
    user = db.session.get(User, int(user_id))
    if user is None or not user.is_active:
        return None
    return user


def admin_required(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        if not current_user.is_authenticated or not current_user.is_admin:
            abort(403, description="Access denied. Admin only.")
        return f(*args, **kwargs)
    return wrapper


@app.context_processor
def inject_perms():
    au = current_user if getattr(
        current_user, "is_authenticated", False) else None
    return {
        "is_admin": bool(au) and bool(au.is_admin),
        "shift_info": SHIFT_INFO,
        "shift_codes": SHIFT_CODES,
    }


@app.template_filter("shift_style")
def shift_style(code):
    info = SHIFT_INFO.get(code or "")
    if not info:
        return "background:#f3f4f6;color:#111827"
    return f"background:{info['color']};color:{info['text_color']}"

# -------------------- Small parse helpers --------------------


def _month_add(y: int, m: int, delta: int) -> Tuple[int, int]:
    idx = y * 12 + (m - 1) + delta
    ny = idx // 12
    nm = idx % 12 + 1
    return ny, nm


def parse_ym(ym: str) -> Tuple[int, int]:
    """Parse 'YYYY-MM'; raises ValueError on anything else."""
    y, m = (ym or "").strip().split("-")
    year, month = int(y), int(m)
    if not 1 <= month <= 12 or year < 1:
        raise ValueError(f"invalid month {ym!r}")
    return year, month


def month_key(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def month_range(year: int, month: int):
    start = date(year, month, 1)
    stop = date(year + (month // 12), (month % 12) + 1, 1)
    days = (stop - start).days
    return start, [start + timedelta(d) for d in range(days)]


def _year_month_iter(start_date: date, end_date: date):
    y, m = start_date.year, start_date.month
    last = (end_date.year, end_date.month)
    while (y, m) <= last:
        yield y, m
        y, m = _month_add(y, m, 1)


def _parse_date(val: str):
    val = (val or "").strip()
    if not val:
        return None
    try:
        return date.fromisoformat(val)
    except ValueError:
        return None


def _parse_int(val) -> Optional[int]:
    try:
        return int(str(val).strip())
    except (TypeError, ValueError):
        return None


def _get_or_404(model, raw_id):
    pk = _parse_int(raw_id)
    if pk is None:
        abort(404)
    return db.get_or_404(model, pk)


def normalize_code(code) -> Optional[str]:
    """Upper-cased shift code if it is one of SHIFT_CODES, else None."""
    c = (code or "").strip().upper()
    return c if c in SHIFT_INFO else None


def _context_month_for_date(d: date | None) -> str | None:
    return None if not d else f"{d.year:04d}-{d.month:02d}"


def _safe_next(nxt: str | None) -> str | None:
    if nxt and nxt.startswith("/") and not nxt.startswith("//"):
        return nxt
    return None


def log_change(entity_type: str, entity_id: int, field: str, old, new, note: str = "",
               context_day: date | None = None, who: "User" = None):
    """Stage an audit row; the caller's commit persists it with the change."""
    who_id = getattr(who, "id", None)
    if who_id is None and has_request_context() and current_user.is_authenticated:
        who_id = current_user.id
    db.session.add(ChangeLog(
        when=utcnow(),
        who_user_id=who_id,
        entity_type=entity_type,
        entity_id=entity_id,
        field=field,
        old_value=str(old) if old is not None else None,
        new_value=str(new) if new is not None else None,
        context_month=_context_month_for_date(context_day),
        note=note or "",
    ))

# -------------------- Identity --------------------


def find_user_by_login(login_name: str) -> Optional[User]:
    """Map a login name to a User: username, e-mail, then e-mail local-part."""
    name = (login_name or "").strip()
    if not name:
        return None
    if "@" in name:
        user = User.query.filter(func.lower(User.email) == name.lower()).first()
        if user:
            return user
        name = name.split("@", 1)[0]
    return User.query.filter_by(username=name).first()


def authenticate(login_name: str, password: str) -> User:
    user = find_user_by_login(login_name)
    if user is None:
        raise AuthenticationError("Invalid username or password.")
    # checked first so a deactivated account never reveals password validity
    if not user.is_active:
        raise AccountInactive("Account is inactive. Contact an administrator.")
    if not user.check_password(password or ""):
        raise AuthenticationError("Invalid username or password.")
    return user


def issue_temporary_password(user: User) -> str:
    temp = secrets.token_urlsafe(9)
    user.set_password(temp)
    user.must_change_password = True
    return temp


def create_user(username: str, full_name: str, grade: str = "", is_admin: bool = False,
                phone: str | None = None, email: str | None = None) -> Tuple[User, str]:
    """Create an account and return it with its one-time temporary password."""
    username = (username or "").strip()
    full_name = (full_name or "").strip()
    email = (email or "").strip() or None
    if not username or not full_name:
        raise ValidationError("Username and full name are required.")
    if "@" in username:
        raise ValidationError("Username must not contain '@'.")
    if User.query.filter_by(username=username).first():
        raise ValidationError(f"Username '{username}' already exists.")
    if email and User.query.filter(func.lower(User.email) == email.lower()).first():
        raise ValidationError(f"E-mail '{email}' is already in use.")
    user = User(
        username=username,
        full_name=full_name,
        grade=(grade or "").strip(),
        is_admin=bool(is_admin),
        is_active=True,
        phone=(phone or "").strip() or None,
        email=email,
    )
    temp = issue_temporary_password(user)
    db.session.add(user)
    db.session.commit()
    app.logger.info("User %s created", username)
    return user, temp


def set_user_active(user: User, active: bool, actor: User) -> None:
    if user.id == actor.id and not active:
        raise ValidationError("You cannot deactivate your own account.")
    if user.is_active != active:
        log_change("user", user.id, "is_active", user.is_active, active, who=actor)
        user.is_active = active
    db.session.commit()


def change_password(user: User, current: str, new1: str, new2: str) -> None:
    if not user.check_password(current or ""):
        raise ValidationError("Current password is incorrect.")
    if not new1 or new1 != new2:
        raise ValidationError("New passwords do not match.")
    if len(new1) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"New password must be at least {MIN_PASSWORD_LENGTH} characters.")
    user.set_password(new1)
    user.must_change_password = False
    db.session.commit()

# -------------------- Shifts & roster --------------------


def find_shift_id(user_id: int, day: date) -> Optional[int]:
    row = (db.session.query(Shift.id)
           .filter(Shift.user_id == user_id, Shift.day == day)
           .first())
    return row[0] if row else None


def _shift_cell(user_id: int, day: date, existing: Optional[Shift] = None) -> Shift:
    s = existing or Shift.query.filter_by(user_id=user_id, day=day).first()
    if not s:
        s = Shift(user_id=user_id, day=day, shift_code=OFF_CODE, source="auto")
        db.session.add(s)
    return s


def active_staff():
    return (User.query
            .filter(User.is_active.is_(True))
            .order_by(User.username)
            .all())


def ordered_staff_for_month(month_year: str):
    """Return (staff, has_ordering): the month's ranking, else active staff by username."""
    rows = (db.session.query(StaffOrdering, User)
            .join(User, StaffOrdering.user_id == User.id)
            .filter(StaffOrdering.month_year == month_year,
                    User.is_active.is_(True))
            .order_by(StaffOrdering.order_position, User.username)
            .all())
    if rows:
        return [u for _, u in rows], True
    return active_staff(), False


@cache.memoize(timeout=300)
def _month_shift_map(year: int, month: int) -> dict:
    """{user_id: {iso_day: code}} for every shift in the month."""
    start, days = month_range(year, month)
    out = defaultdict(dict)
    rows = (db.session.query(Shift.user_id, Shift.day, Shift.shift_code)
            .filter(Shift.day >= start, Shift.day <= days[-1]))
    for uid, d, code in rows:
        out[uid][d.isoformat()] = code
    return dict(out)


def invalidate_roster_cache():
    cache.delete_memoized(_month_shift_map)


def roster_cell(shift_map: dict, user_id: int, day: date) -> str:
    return shift_map.get(user_id, {}).get(day.isoformat(), EMPTY_CELL)


def load_month_roster(year: int, month: int) -> dict:
    start, days = month_range(year, month)
    staff, has_ordering = ordered_staff_for_month(month_key(year, month))
    events = (Event.query
              .filter(Event.day >= start, Event.day <= days[-1])
              .order_by(Event.day, Event.title)
              .all())
    events_by_day = defaultdict(list)
    for ev in events:
        events_by_day[ev.day].append(ev)
    return {
        "days": days,
        "staff": staff,
        "has_ordering": has_ordering,
        "shift_map": _month_shift_map(year, month),
        "events": events,
        "events_by_day": dict(events_by_day),
    }


def update_shift_code(shift: Shift, code: str, who: User) -> Shift:
    norm = normalize_code(code)
    if not norm:
        raise ValidationError(f"Unknown shift code '{(code or '').strip()}'.")
    if shift.shift_code != norm:
        log_change("shift", shift.id, "shift_code", shift.shift_code, norm,
                   context_day=shift.day, who=who)
        shift.shift_code = norm
        shift.source = "manual"
    db.session.commit()
    invalidate_roster_cache()
    return shift

# -------------------- Roster generation --------------------


def parse_pattern_codes(raw: str) -> tuple:
    codes = [c.strip().upper() for c in (raw or "").split(",") if c.strip()]
    if not codes:
        raise ValidationError("A pattern needs at least one shift code.")
    bad = [c for c in codes if c not in SHIFT_INFO]
    if bad:
        raise ValidationError(f"Unknown shift code(s): {', '.join(bad)}.")
    return tuple(codes)


def create_pattern(name: str, raw_codes: str) -> RosterPattern:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Pattern name is required.")
    codes = parse_pattern_codes(raw_codes)
    if RosterPattern.query.filter_by(name=name).first():
        raise ValidationError(f"Pattern '{name}' already exists.")
    p = RosterPattern(name=name, codes_csv=",".join(codes))
    db.session.add(p)
    db.session.commit()
    return p


def resolve_pattern(pattern_id) -> tuple:
    if pattern_id in (None, ""):
        return DEFAULT_PATTERN
    pid = _parse_int(pattern_id)
    p = db.session.get(RosterPattern, pid) if pid is not None else None
    if p is None or not p.codes:
        raise RosterGenerationError("Unknown roster pattern.")
    return p.codes


def pattern_code_for(pattern, staff_index: int, day: date) -> str:
    # staff are staggered three days apart; position counts from PATTERN_EPOCH
    return pattern[(staff_index * 3 + (day - PATTERN_EPOCH).days) % len(pattern)]


def generate_roster(start_day: date, end_day: date, pattern_id=None, who: User = None) -> dict:
    """
    Fill shifts for every ordered staff member between start_day and end_day
    (inclusive) from a repeating pattern. Manual and exchanged cells are kept.
    """
    if start_day is None or end_day is None:
        raise RosterGenerationError("Start and end dates are required.")
    if end_day < start_day:
        raise RosterGenerationError("End date must not be before start date.")
    if (end_day - start_day).days >= MAX_GENERATE_DAYS:
        raise RosterGenerationError(
            f"Generate at most {MAX_GENERATE_DAYS} days at a time.")
    pattern = resolve_pattern(pattern_id)

    counts = {"created": 0, "updated": 0, "skipped": 0}
    for y, m in _year_month_iter(start_day, end_day):
        staff, _ = ordered_staff_for_month(month_key(y, m))
        _, month_days = month_range(y, m)
        days = [d for d in month_days if start_day <= d <= end_day]
        existing = {
            (s.user_id, s.day): s
            for s in Shift.query.filter(Shift.day >= days[0], Shift.day <= days[-1])
        }
        for idx, person in enumerate(staff):
            for d in days:
                code = pattern_code_for(pattern, idx, d)
                cell = existing.get((person.id, d))
                if cell is None:
                    db.session.add(Shift(user_id=person.id, day=d,
                                         shift_code=code, source="auto"))
                    counts["created"] += 1
                elif cell.source in LOCKED_SOURCES:
                    counts["skipped"] += 1
                elif cell.shift_code != code:
                    cell.shift_code = code
                    counts["updated"] += 1

    log_change("roster", 0, "generate", None,
               f"{start_day.isoformat()}..{end_day.isoformat()}",
               note=f"created={counts['created']} updated={counts['updated']} skipped={counts['skipped']}",
               context_day=start_day, who=who)
    db.session.commit()
    invalidate_roster_cache()
    app.logger.info("Roster generated %s..%s: %s", start_day, end_day, counts)
    return counts

# -------------------- Shift exchanges --------------------


def can_decide_exchange(ex: ShiftExchange, user: User) -> bool:
    return bool(user.is_admin) or ex.target_user_id == user.id


def create_exchange(requester: User, target_user_id, original_day: date | None,
                    target_day: date | None, reason: str = "") -> ShiftExchange:
    if not target_user_id or not original_day or not target_day:
        raise ValidationError("Please complete all fields.")
    target = db.session.get(User, target_user_id)
    if target is None or not target.is_active:
        raise ValidationError("Selected colleague is not available.")
    if target.id == requester.id:
        raise ValidationError("You cannot exchange a shift with yourself.")

    original_shift_id = find_shift_id(requester.id, original_day)
    target_shift_id = find_shift_id(target.id, target_day)
    if original_shift_id is None or target_shift_id is None:
        raise ShiftNotFound("Shift not found for that date.")

    ex = ShiftExchange(
        requester_id=requester.id,
        target_user_id=target.id,
        original_shift_id=original_shift_id,
        target_shift_id=target_shift_id,
        status=EXCHANGE_PENDING,
        reason=(reason or "").strip() or None,
    )
    db.session.add(ex)
    db.session.commit()
    app.logger.info("Exchange %s requested by %s with %s",
                    ex.id, requester.username, target.username)
    return ex


def _swap_exchange_shifts(ex: ShiftExchange, actor: User) -> None:
    """Swap both users' codes on the original day and on the target day."""
    original = db.session.get(Shift, ex.original_shift_id)
    wanted = db.session.get(Shift, ex.target_shift_id)
    if original is None or wanted is None:
        raise ShiftNotFound("A shift in this exchange no longer exists.")

    for d in sorted({original.day, wanted.day}):
        mine = Shift.query.filter_by(user_id=ex.requester_id, day=d).first()
        theirs = Shift.query.filter_by(user_id=ex.target_user_id, day=d).first()
        # a missing cell counts as off; nothing is written when both match
        if (mine.shift_code if mine else OFF_CODE) == (theirs.shift_code if theirs else OFF_CODE):
            continue
        mine = _shift_cell(ex.requester_id, d, mine)
        theirs = _shift_cell(ex.target_user_id, d, theirs)
        db.session.flush()
        log_change("shift", mine.id, "shift_code", mine.shift_code, theirs.shift_code,
                   note=f"exchange #{ex.id}", context_day=d, who=actor)
        log_change("shift", theirs.id, "shift_code", theirs.shift_code, mine.shift_code,
                   note=f"exchange #{ex.id}", context_day=d, who=actor)
        mine.shift_code, theirs.shift_code = theirs.shift_code, mine.shift_code
        mine.source = theirs.source = "exchange"


def decide_exchange(ex: ShiftExchange, actor: User, status: str) -> ShiftExchange:
    """pending -> approved|rejected. Approving also swaps the shifts."""
    if status not in (EXCHANGE_APPROVED, EXCHANGE_REJECTED):
        raise InvalidTransition(f"Unknown exchange status '{status}'.")
    if not can_decide_exchange(ex, actor):
        raise NotAllowed("Only the requested colleague or an admin can respond.")
    if ex.is_terminal:
        raise InvalidTransition(f"This exchange has already been {ex.status}.")

    if status == EXCHANGE_APPROVED:
        _swap_exchange_shifts(ex, actor)

    log_change("exchange", ex.id, "status", ex.status, status, who=actor)
    ex.status = status
    ex.decided_by_id = actor.id
    ex.decided_at = utcnow()
    db.session.commit()
    if status == EXCHANGE_APPROVED:
        invalidate_roster_cache()
    app.logger.info("Exchange %s %s by %s", ex.id, status, actor.username)
    return ex


def list_exchanges(user: User) -> list:
    """Exchanges visible to user, newest first, joined in one query."""
    Requester = aliased(User)
    Target = aliased(User)
    Original = aliased(Shift)
    Wanted = aliased(Shift)
    q = (db.session.query(ShiftExchange, Requester, Target, Original, Wanted)
         .join(Requester, ShiftExchange.requester_id == Requester.id)
         .join(Target, ShiftExchange.target_user_id == Target.id)
         .outerjoin(Original, ShiftExchange.original_shift_id == Original.id)
         .outerjoin(Wanted, ShiftExchange.target_shift_id == Wanted.id))
    if not user.is_admin:
        q = q.filter(or_(ShiftExchange.requester_id == user.id,
                         ShiftExchange.target_user_id == user.id))
    rows = q.order_by(ShiftExchange.created_at.desc(), ShiftExchange.id.desc()).all()
    return [
        {"exchange": ex, "requester": r, "target": t,
         "original": o, "target_shift": w}
        for ex, r, t, o, w in rows
    ]

# -------------------- Staff ordering --------------------


def parse_id_list(raw: str) -> list:
    try:
        return [int(x) for x in (raw or "").split(",") if x.strip()]
    except ValueError:
        raise OrderingError("Invalid staff list.")


def move_in_order(ids, index: int, direction: str) -> list:
    """Swap ids[index] with its neighbour; out-of-range moves are no-ops."""
    ids = list(ids)
    other = index - 1 if direction == "up" else index + 1
    if 0 <= index < len(ids) and 0 <= other < len(ids):
        ids[index], ids[other] = ids[other], ids[index]
    return ids


def users_in_order(ids) -> list:
    by_id = {u.id: u for u in User.query.filter(User.id.in_(ids)).all()} if ids else {}
    return [by_id[i] for i in ids if i in by_id]


def save_staff_ordering(month_year: str, user_ids, who: User) -> int:
    """Upsert the month's ranking keyed by (month, user); drop users left out."""
    try:
        parse_ym(month_year)
    except ValueError:
        raise OrderingError("Invalid month.")
    user_ids = list(user_ids)
    if len(set(user_ids)) != len(user_ids):
        raise OrderingError("A staff member appears more than once.")
    if user_ids:
        known = {uid for (uid,) in db.session.query(User.id)
                 .filter(User.id.in_(user_ids), User.is_active.is_(True))}
        missing = [uid for uid in user_ids if uid not in known]
        if missing:
            raise OrderingError("Ordering contains unknown or inactive staff.")

    existing = {row.user_id: row for row in
                StaffOrdering.query.filter_by(month_year=month_year)}
    for pos, uid in enumerate(user_ids, start=1):
        row = existing.pop(uid, None)
        if row is None:
            row = StaffOrdering(month_year=month_year, user_id=uid)
            db.session.add(row)
        row.order_position = pos
        row.created_by = getattr(who, "id", None)
    for row in existing.values():
        db.session.delete(row)
    db.session.commit()
    app.logger.info("Staff ordering for %s saved (%d staff)", month_year, len(user_ids))
    return len(user_ids)


def clear_staff_ordering(month_year: str) -> int:
    n = StaffOrdering.query.filter_by(month_year=month_year).delete()
    db.session.commit()
    return n

# -------------------- Events --------------------


def create_event(title: str, day: date | None, type_: str, who: User) -> Event:
    title = (title or "").strip()
    if not title or day is None:
        raise ValidationError("Event title and date are required.")
    type_ = (type_ or "").strip().lower()
    ev = Event(title=title, day=day,
               type=type_ if type_ in EVENT_TYPES else "other",
               created_by=getattr(who, "id", None))
    db.session.add(ev)
    db.session.commit()
    return ev

# -------------------- Seed --------------------


def seed_once():
    if not RosterPattern.query.filter_by(name=DEFAULT_PATTERN_NAME).first():
        db.session.add(RosterPattern(name=DEFAULT_PATTERN_NAME,
                                     codes_csv=",".join(DEFAULT_PATTERN)))
    if User.query.count() == 0:
        password = os.getenv("ROSTER_ADMIN_PASSWORD")
        admin_user = User(username="admin", full_name="Administrator",
                          is_admin=True, is_active=True)
        if password:
            admin_user.set_password(password)
        else:
            password = issue_temporary_password(admin_user)
            app.logger.warning(
                "Created initial account 'admin' with temporary password %s", password)
        db.session.add(admin_user)
    db.session.commit()

# -------------------- Error pages --------------------


@app.errorhandler(403)
def forbidden(e):
    return render_template("error.html", message=e.description), 403


@app.errorhandler(404)
def not_found(e):
    # No route matched at all: send people back to the dashboard
    if request.url_rule is None:
        return redirect(url_for("index"))
    return render_template("error.html", message="Not found."), 404


def _db_failure(what: str):
    db.session.rollback()
    app.logger.exception("Database error while %s", what)
    flash("Could not save changes.", "error")

# -------------------- Auth routes --------------------


@app.route("/login", methods=["GET", "POST"], endpoint="login")
def signin_form():
    if current_user.is_authenticated and request.method == "GET":
        return redirect(url_for("index"))
    username = ""
    if request.method == "POST":
        username = (request.form.get("username") or "").strip()
        password = request.form.get("password") or ""
        try:
            user = authenticate(username, password)
        except AuthenticationError as e:
            app.logger.warning("Failed login for %r: %s", username, e)
            flash(str(e), "error")
            return render_template("login.html", username=username)
        login_user(user)
        app.logger.info("User %s logged in", user.username)
        flash("Logged in successfully", "ok")
        if user.must_change_password:
            flash("Please set a new password.", "info")
            return redirect(url_for("profile"))
        return redirect(_safe_next(request.args.get("next")) or url_for("index"))
    return render_template("login.html", username=username)


@app.route("/logout", methods=["GET"], endpoint="logout")
@login_required
def logout():
    logout_user()
    flash("Logged out", "ok")
    return redirect(url_for("login"))

# -------------------- Dashboard --------------------


@app.route("/")
@login_required
def index():
    t = date.today()
    start, days = month_range(t.year, t.month)
    rows = (Shift.query
            .filter(Shift.user_id == current_user.id,
                    Shift.day >= start, Shift.day <= days[-1])
            .order_by(Shift.day)
            .all())
    shift_map = {s.day: s.shift_code for s in rows}
    pending_received = (ShiftExchange.query
                        .filter_by(target_user_id=current_user.id,
                                   status=EXCHANGE_PENDING)
                        .count())
    return render_template("dashboard.html",
                           days=days,
                           shift_map=shift_map,
                           month_title=start.strftime("%B %Y"),
                           pending_received=pending_received,
                           empty_cell=EMPTY_CELL)

# -------------------- Roster --------------------


def _ym_or_404(ym: str) -> Tuple[int, int]:
    try:
        return parse_ym(ym)
    except ValueError:
        abort(404)


@app.route("/roster")
@login_required
def roster_current():
    t = date.today()
    return redirect(url_for("roster_month", ym=month_key(t.year, t.month)))


def _render_roster(ym: str, print_view: bool):
    year, month = _ym_or_404(ym)
    ctx = load_month_roster(year, month)
    py, pm = _month_add(year, month, -1)
    ny, nm = _month_add(year, month, +1)
    return render_template("roster.html",
                           ym=ym,
                           month_title=date(year, month, 1).strftime("%B %Y"),
                           prev_ym=month_key(py, pm),
                           next_ym=month_key(ny, nm),
                           full_names=request.args.get("names") == "full",
                           print_view=print_view,
                           cell=roster_cell,
                           **ctx)


@app.route("/roster/<ym>")
@login_required
def roster_month(ym):
    return _render_roster(ym, print_view=False)


@app.route("/roster/<ym>/print")
@login_required
def roster_print_view(ym):
    return _render_roster(ym, print_view=True)


@app.route("/roster/<ym>/export")
@login_required
def roster_export_csv(ym):
    year, month = _ym_or_404(ym)
    ctx = load_month_roster(year, month)
    days, shift_map = ctx["days"], ctx["shift_map"]

    output = io.StringIO()
    w = csv.writer(output)
    w.writerow(["Username", "Full name", "Grade"] + [d.isoformat() for d in days])
    for s in ctx["staff"]:
        row = [s.username, s.full_name, s.grade]
        for d in days:
            row.append(shift_map.get(s.id, {}).get(d.isoformat(), ""))
        w.writerow(row)

    csv_bytes = output.getvalue().encode("utf-8")
    filename = f"roster_{year:04d}-{month:02d}.csv"
    return Response(
        csv_bytes,
        mimetype="text/csv; charset=utf-8",
        headers={"Content-Disposition": f"attachment; filename={filename}"}
    )

# -------------------- Exchanges --------------------


@app.route("/exchanges", methods=["GET", "POST"])
@login_required
def exchanges_page():
    if request.method == "POST":
        try:
            create_exchange(
                current_user,
                _parse_int(request.form.get("target_user_id")),
                _parse_date(request.form.get("original_date")),
                _parse_date(request.form.get("target_date")),
                request.form.get("reason", ""),
            )
        except RosterError as e:
            flash(str(e), "error")
            return redirect(url_for("exchanges_page", tab="new"))
        except SQLAlchemyError:
            _db_failure("creating an exchange")
            return redirect(url_for("exchanges_page", tab="new"))
        flash("Exchange request sent.", "ok")
        return redirect(url_for("exchanges_page", tab="sent"))

    rows = list_exchanges(current_user)
    sent = [r for r in rows if r["exchange"].requester_id == current_user.id]
    received = [r for r in rows if r["exchange"].target_user_id == current_user.id]
    colleagues = (User.query
                  .filter(User.is_active.is_(True), User.id != current_user.id)
                  .order_by(User.username)
                  .all())
    tab = request.args.get("tab", "sent")
    if tab not in ("sent", "received", "new", "all"):
        tab = "sent"
    return render_template("exchanges.html",
                           tab=tab,
                           sent=sent,
                           received=received,
                           all_rows=rows if current_user.is_admin else [],
                           colleagues=colleagues,
                           can_decide=can_decide_exchange)


def _decide(xid: int, status: str):
    ex = db.get_or_404(ShiftExchange, xid)
    try:
        decide_exchange(ex, current_user, status)
    except NotAllowed as e:
        abort(403, description=str(e))
    except RosterError as e:
        db.session.rollback()
        flash(str(e), "error")
    except SQLAlchemyError:
        _db_failure("deciding an exchange")
    else:
        flash("Exchange approved." if status == EXCHANGE_APPROVED
              else "Exchange rejected.", "ok")
    return redirect(url_for("exchanges_page", tab=request.form.get("tab") or "received"))


@app.route("/exchanges/<int:xid>/approve", methods=["POST"])
@login_required
def exchange_approve(xid):
    return _decide(xid, EXCHANGE_APPROVED)


@app.route("/exchanges/<int:xid>/reject", methods=["POST"])
@login_required
def exchange_reject(xid):
    return _decide(xid, EXCHANGE_REJECTED)

# -------------------- Profile --------------------


@app.route("/profile", methods=["GET", "POST"])
@login_required
def profile():
    """Allow any logged-in user to see their details and reset OWN password."""
    if request.method == "POST":
        u = db.session.get(User, current_user.id)
        try:
            change_password(u,
                            request.form.get("current_password", ""),
                            request.form.get("new_password", ""),
                            request.form.get("confirm_password", ""))
        except RosterError as e:
            flash(str(e), "error")
        except SQLAlchemyError:
            _db_failure("changing a password")
        else:
            flash("Password updated.", "ok")
        return redirect(url_for("profile"))
    return render_template("profile.html", user=current_user)

# -------------------- Admin --------------------


def _admin_range():
    t = date.today()
    start, days = month_range(t.year, t.month)
    s = _parse_date(request.values.get("start")) or start
    e = _parse_date(request.values.get("end")) or days[-1]
    return s, e


@app.route("/admin", methods=["GET", "POST"])
@login_required
@admin_required
def admin():
    start, end = _admin_range()

    if request.method == "POST":
        form = request.form.get("form", "")
        try:
            if form == "user_new":
                user, temp = create_user(
                    request.form.get("username", ""),
                    request.form.get("full_name", ""),
                    request.form.get("grade", ""),
                    bool(request.form.get("is_admin")),
                    request.form.get("phone"),
                    request.form.get("email"),
                )
                flash(f"User {user.username} created. Temporary password: {temp}", "ok")
            elif form == "user_toggle":
                u = _get_or_404(User, request.form.get("user_id"))
                set_user_active(u, not u.is_active, current_user)
                flash(f"{u.username} is now {'active' if u.is_active else 'inactive'}.", "ok")
            elif form == "user_reset":
                u = _get_or_404(User, request.form.get("user_id"))
                temp = issue_temporary_password(u)
                db.session.commit()
                flash(f"New temporary password for {u.username}: {temp}", "ok")
            elif form == "event_new":
                create_event(request.form.get("title", ""),
                             _parse_date(request.form.get("day")),
                             request.form.get("type", ""),
                             current_user)
                flash("Event added.", "ok")
            elif form == "event_delete":
                ev = _get_or_404(Event, request.form.get("event_id"))
                db.session.delete(ev)
                db.session.commit()
                flash("Event deleted.", "ok")
            elif form == "pattern_new":
                p = create_pattern(request.form.get("name", ""),
                                   request.form.get("codes", ""))
                flash(f"Pattern '{p.name}' saved.", "ok")
            else:
                flash("Unknown action.", "error")
        except RosterError as e:
            db.session.rollback()
            flash(str(e), "error")
        except SQLAlchemyError:
            _db_failure(f"handling admin form {form!r}")
        return redirect(url_for("admin", start=start.isoformat(), end=end.isoformat()))

    stats = {
        "users": User.query.count(),
        "shifts": Shift.query.count(),
        "pending": ShiftExchange.query.filter_by(status=EXCHANGE_PENDING).count(),
    }
    shifts = (Shift.query
              .join(User, Shift.user_id == User.id)
              .filter(Shift.day >= start, Shift.day <= end)
              .order_by(Shift.day.asc(), User.username.asc())
              .limit(ADMIN_SHIFT_LIMIT)
              .all())
    users = User.query.order_by(User.username).all()
    events = (Event.query
              .filter(Event.day >= start, Event.day <= end)
              .order_by(Event.day)
              .all())
    patterns = RosterPattern.query.order_by(RosterPattern.name).all()
    return render_template("admin.html",
                           stats=stats,
                           start=start,
                           end=end,
                           shifts=shifts,
                           users=users,
                           events=events,
                           event_types=EVENT_TYPES,
                           patterns=patterns,
                           shift_limit=ADMIN_SHIFT_LIMIT)


@app.route("/admin/generate", methods=["POST"])
@login_required
@admin_required
def admin_generate():
    start = _parse_date(request.form.get("start"))
    end = _parse_date(request.form.get("end"))
    try:
        res = generate_roster(start, end, request.form.get("pattern_id") or None,
                              who=current_user)
    except RosterError as e:
        db.session.rollback()
        flash(str(e), "error")
    except SQLAlchemyError:
        _db_failure("generating a roster")
    else:
        flash(f"Roster generated: {res['created']} created, {res['updated']} updated, "
              f"{res['skipped']} kept.", "ok")
    args = {}
    if start and end:
        args = {"start": start.isoformat(), "end": end.isoformat()}
    return redirect(url_for("admin", **args))


@app.route("/admin/shifts/<int:sid>", methods=["POST"])
@login_required
@admin_required
def admin_shift_update(sid):
    shift = db.get_or_404(Shift, sid)
    try:
        update_shift_code(shift, request.form.get("code", ""), current_user)
    except RosterError as e:
        flash(str(e), "error")
    except SQLAlchemyError:
        _db_failure("updating a shift")
    else:
        flash("Shift updated.", "ok")
    start, end = _admin_range()
    return redirect(url_for("admin", start=start.isoformat(), end=end.isoformat()))


@app.route("/admin/ordering", methods=["GET", "POST"])
@login_required
@admin_required
def admin_ordering():
    t = date.today()
    month_year = (request.values.get("month") or month_key(t.year, t.month)).strip()
    try:
        parse_ym(month_year)
    except ValueError:
        flash("Invalid month.", "error")
        return redirect(url_for("admin_ordering"))

    if request.method == "POST":
        action = request.form.get("action", "")
        try:
            ids = parse_id_list(request.form.get("order", ""))
            if action.startswith(("up:", "down:")):
                direction, _, idx = action.partition(":")
                ids = move_in_order(ids, _parse_int(idx) or 0, direction)
                return render_template("admin_ordering.html",
                                       month_year=month_year,
                                       staff=users_in_order(ids),
                                       has_ordering=True,
                                       unsaved=True)
            if action == "save":
                n = save_staff_ordering(month_year, ids, current_user)
                flash(f"Ordering for {month_year} saved ({n} staff).", "ok")
            elif action == "clear":
                clear_staff_ordering(month_year)
                flash(f"Ordering for {month_year} cleared.", "ok")
            else:
                flash("Unknown action.", "error")
        except RosterError as e:
            db.session.rollback()
            flash(str(e), "error")
        except SQLAlchemyError:
            _db_failure("saving staff ordering")
        return redirect(url_for("admin_ordering", month=month_year))

    staff, has_ordering = ordered_staff_for_month(month_year)
    return render_template("admin_ordering.html",
                           month_year=month_year,
                           staff=staff,
                           has_ordering=has_ordering,
                           unsaved=False)


@app.route("/admin/change-log")
@login_required
@admin_required
def change_log_page():
    ym = request.args.get("ym", "").strip() or None
    et = request.args.get("entity_type", "").strip() or None

    q = ChangeLog.query.order_by(ChangeLog.when.desc(), ChangeLog.id.desc())
    if ym:
        q = q.filter(ChangeLog.context_month == ym)
    if et:
        q = q.filter(ChangeLog.entity_type == et)
    rows = q.limit(200).all()
    return render_template("change_log.html", rows=rows, ym=ym, entity_type=et)


# -------------------- DB init --------------------

with app.app_context():
    db.create_all()
    seed_once()

# -------------------- WSGI entry point --------------------
application = app

# -------------------- Local dev server --------------------
if __name__ == "__main__":
    app.run(host="127.0.0.1", port=5001, debug=False)
