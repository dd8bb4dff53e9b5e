"""Decorators, response envelopes and commit helpers shared by the API routes

Every JSON response uses the same envelope: ``{'errno': 0, 'result': ...}``
on success and ``{'errno': <code>, 'error': <message>}`` on failure.
"""

import logging
import time
from contextlib import contextmanager
from functools import wraps

from flask import jsonify, request
from flask_login import current_user
from sqlalchemy import event, inspect
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from chargesync import db
from chargesync.errors import ChargeSyncError

logger = logging.getLogger(__name__)


def get_api_user():
    """
    Resolve the caller from the login session, falling back to an
    ``Authorization: Bearer <api_token>`` header (used by the scheduler).

    Returns None when neither identifies a user.
    """
    if current_user.is_authenticated:
        return current_user

    from chargesync.models import User
    scheme, _, token = (request.headers.get('Authorization') or '').partition(' ')
    if scheme != 'Bearer' or not token.strip():
        return None
    return User.query.filter_by(api_token=token.strip()).first()


def _unauthorized():
    return jsonify({'errno': 401, 'error': 'Authentication required'}), 401


# ----------------------------------------------------------------------------
# Envelopes
# ----------------------------------------------------------------------------

def ok(result=None, **extra):
    body = {'errno': 0, 'result': result}
    body.update(extra)
    return jsonify(body)


def error_response(error: ChargeSyncError):
    """Error envelope with the upstream errno and the status the error class maps to"""
    return jsonify(error.to_dict()), error.status_code


# ----------------------------------------------------------------------------
# Decorators
# ----------------------------------------------------------------------------

def api_login_required(f):
    """Reject anonymous callers; pass the resolved user as ``api_user``

    Usage:
        @bp.route('/api/automation/status')
        @api_login_required
        def automation_status(api_user=None):
            ...
    """
    @wraps(f)
    def wrapper(*args, **kwargs):
        user = get_api_user()
        if user is None:
            return _unauthorized()
        kwargs['api_user'] = user
        return f(*args, **kwargs)

    return wrapper


def require_device(f):
    """Reject callers without an inverter serial number or FoxESS API key

    Place below api_login_required so ``api_user`` is already resolved.
    """
    @wraps(f)
    def wrapper(*args, **kwargs):
        user = kwargs.get('api_user') or get_api_user()
        if user is None:
            return _unauthorized()

        missing = None
        if not user.device_sn:
            missing = 'Device serial number not configured'
        elif not user.foxess_api_key:
            missing = 'FoxESS API not configured'
        if missing:
            logger.warning(f"{f.__name__} refused for user {user.id}: {missing}")
            return jsonify({'errno': 400, 'error': missing}), 400

        kwargs['api_user'] = user
        return f(*args, **kwargs)

    return wrapper


def handle_errors(f):
    """Turn ChargeSyncError into its error envelope after rolling back the session"""
    @wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except ChargeSyncError as e:
            db.session.rollback()
            logger.warning(f"{f.__name__} failed: {e.message} (errno {e.errno})")
            return error_response(e)

    return wrapper


# ----------------------------------------------------------------------------
# Commits
# ----------------------------------------------------------------------------

_WRITTEN_KEY = 'chargesync_written'
_DELETED_KEY = 'chargesync_deleted'


@event.listens_for(Session, 'after_flush')
def _track_flushed_writes(session, flush_context):
    # A rollback discards flushed rows too; remember them for db_commit_with_retry
    session.info.setdefault(_WRITTEN_KEY, set()).update(session.new, session.dirty)
    session.info.setdefault(_DELETED_KEY, set()).update(session.deleted)


@event.listens_for(Session, 'after_commit')
@event.listens_for(Session, 'after_rollback')
def _forget_writes(session):
    session.info.pop(_WRITTEN_KEY, None)
    session.info.pop(_DELETED_KEY, None)


def _is_locked_error(error: OperationalError) -> bool:
    return 'locked' in str(error.orig or error).lower()


def _pending_unit_of_work():
    """Column values of every row written since the last commit, and the rows deleted."""
    session = db.session
    written = set(session.info.get(_WRITTEN_KEY, ())) | set(session.new) | set(session.dirty)
    deleted = set(session.info.get(_DELETED_KEY, ())) | set(session.deleted)

    rows = []
    for obj in written - deleted:
        state = inspect(obj)
        values = {
            prop.key: state.dict[prop.key]
            for prop in state.mapper.column_attrs
            if prop.key in state.dict
        }
        rows.append((obj, values))
    return rows, deleted


def _replay(unit_of_work):
    rows, deleted = unit_of_work
    for obj, values in rows:
        state = inspect(obj)
        if state.transient:
            # Inserted by the rolled-back transaction; attributes are intact
            db.session.add(obj)
            continue
        primary_keys = {
            prop.key for prop in state.mapper.column_attrs
            if any(column.primary_key for column in prop.columns)
        }
        for key, value in values.items():
            if key not in primary_keys:
                setattr(obj, key, value)
    for obj in deleted:
        if inspect(obj).persistent:
            db.session.delete(obj)


def db_commit_with_retry(max_retries=3, retry_delay=0.5):
    """Commit the session, backing off while SQLite reports the database as locked.

    Cycles from the scheduler and API requests write concurrently, so a
    commit can hit "database is locked". The failed transaction has to be
    rolled back, so the rows it wrote (flushed or not) are replayed into the
    session before the next attempt. Waits retry_delay, 2 * retry_delay, ...
    between attempts. Any other error, or running out of retries, rolls back
    and re-raises.
    """
    for attempt in range(max_retries + 1):
        unit_of_work = _pending_unit_of_work()
        try:
            db.session.commit()
            return
        except OperationalError as e:
            db.session.rollback()
            if not _is_locked_error(e) or attempt >= max_retries:
                raise
            wait_time = retry_delay * (2 ** attempt)
            logger.warning(f"Database locked (attempt {attempt + 1}/{max_retries + 1}), retrying in {wait_time}s")
            time.sleep(wait_time)
            _replay(unit_of_work)
        except Exception:
            db.session.rollback()
            raise


@contextmanager
def db_transaction(logger_context=None, retry_on_lock=True):
    """Commit what the block wrote, or roll it all back if the block raises

    Usage:
        with db_transaction(logger_context='Create rule'):
            rule = create_rule(api_user, data)
    """
    try:
        yield
        if retry_on_lock:
            db_commit_with_retry()
        else:
            db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"{logger_context or 'Database transaction'} failed: {e}")
        raise
    if logger_context:
        logger.debug(f"{logger_context}: committed")
