#!/usr/bin/env python3
"""
Migrate Cerberus Helpdesk 5 (Cerb5) tickets into Zendesk.

Notes
-----
• Do NOT hardcode credentials. Use a config.ini and/or .env file.
• Zendesk rate-limits its API; every request is spaced by REQUESTS_PER_MINUTE.
• Tickets are imported (backdated, no notifications) one at a time in ascending
  Cerb5 id order. After an interruption re-run with --after-id <last id logged>.
• Organisations and users are found or created on first sight and remembered
  for the rest of the run.

Dependencies
------------
python -m pip install \
  mysql-connector-python sshtunnel paramiko python-dotenv tqdm requests pytz

"""
from __future__ import annotations

import argparse
import configparser
import contextlib
import logging
from logging.handlers import RotatingFileHandler
import os
import re
import signal
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import pytz
import requests

import mysql.connector
import mysql.connector.pooling
from dotenv import load_dotenv
from requests.exceptions import ConnectionError, Timeout
from sshtunnel import SSHTunnelForwarder
import paramiko
from tqdm import tqdm

import urllib3

# --------------------------------------------------------------------------------------
# Globals & constants
# --------------------------------------------------------------------------------------
DEFAULT_MYSQL_PORT = 3306
DEFAULT_SSH_PORT = 22
DEFAULT_POOL_SIZE = 3
DEFAULT_REQUESTS_PER_MINUTE = 200  # Zendesk's published ceiling for our plan
DEFAULT_SPAM_BUCKET_ID = 4

CONTEXT_TICKET = "cerberusweb.contexts.ticket"
CONTEXT_MESSAGE = "cerberusweb.contexts.message"
ORIGINAL_MESSAGE_ATTACHMENT = "original_message.html"

# Zendesk will not create a user whose email matches one of its own inbound
# support addresses. Substituted before the address is validated.
RESERVED_EMAIL_REWRITES: Dict[str, str] = {
    "operations@example.com": "ops@example.com",
}

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s.]+(\.[^@\s.]+)+$")

# Keep a global flag for cooperative shutdown on SIGINT/SIGTERM
_SHUTTING_DOWN = False

logger = logging.getLogger("cerb5_to_zendesk")

# --------------------------------------------------------------------------------------
# Logging setup
# --------------------------------------------------------------------------------------

def _setup_logging(log_dir: Path = Path("logs")) -> logging.Logger:
    log = logging.getLogger("cerb5_to_zendesk")
    log.setLevel(logging.INFO)

    # console
    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.INFO)
    ch.setFormatter(logging.Formatter(fmt="%(asctime)s %(levelname)s %(message)s",
                                      datefmt="%Y-%m-%d %H:%M:%S"))

    # rotating file
    log_dir.mkdir(exist_ok=True)
    fh = RotatingFileHandler(log_dir / "migration.log", maxBytes=2_000_000, backupCount=5)
    fh.setLevel(logging.INFO)
    fh.setFormatter(logging.Formatter(fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
                                      datefmt="%Y-%m-%d %H:%M:%S"))

    # avoid double handlers on reruns
    if not log.handlers:
        log.addHandler(ch)
        log.addHandler(fh)

    logging.getLogger('mysql.connector').setLevel(logging.WARNING)
    logging.getLogger('paramiko').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)

    return log

# --------------------------------------------------------------------------------------
# Utilities
# --------------------------------------------------------------------------------------

def redact(value: Optional[str]) -> str:
    if not value:
        return "<missing>"
    if len(value) <= 6:
        return "***"
    return value[:2] + "***" + value[-2:]


def fix_date(value: str) -> str:
    """Zendesk says it takes ISO 8601 but it actually wants a literal 'Z'
    instead of an offset. Everything from the offset sign onwards is replaced,
    whatever the offset was.
    """
    date_part, sep, time_part = value.partition("T")
    if not sep:
        raise ValueError(f"Not a combined date-time: {value!r}")
    match = re.search(r"[+\-Z]", time_part)
    if match:
        time_part = time_part[:match.start()]
    return f"{date_part}T{time_part}Z"


def to_zendesk_time(ts, tz) -> str:
    """Render a Cerb5 unix timestamp (or datetime) in ``tz`` in Zendesk's format."""
    if isinstance(ts, datetime):
        dt = ts if ts.tzinfo is not None else pytz.UTC.localize(ts)
    else:
        dt = datetime.fromtimestamp(int(ts), pytz.UTC)
    return fix_date(dt.astimezone(tz).replace(microsecond=0).isoformat())


def is_blank(text: Optional[str]) -> bool:
    return not (text or "").strip()


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and EMAIL_RE.match(email.strip()) is not None


def rewrite_reserved_email(email: str, rewrites: Dict[str, str] = RESERVED_EMAIL_REWRITES) -> str:
    return rewrites.get(email.strip().lower(), email.strip())


def display_name(first_name: Optional[str], last_name: Optional[str], email: str) -> str:
    name = f"{(first_name or '').strip()} {(last_name or '').strip()}".strip()
    return name or email


def _parse_bool(value: Optional[str], default: bool = True) -> bool:
    if value is None or value == "":
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}

# --------------------------------------------------------------------------------------
# Config
# --------------------------------------------------------------------------------------

@dataclass
class AppConfig:
    # MySQL (Cerb5)
    MYSQL_HOST: str
    MYSQL_PORT: int
    MYSQL_DB: str
    MYSQL_USER: str
    MYSQL_PASSWORD: str
    MYSQL_CHARSET: str = "utf8mb4"

    # SSH/SFTP
    SSH_HOST: str = ""
    SSH_PORT: int = DEFAULT_SSH_PORT
    SSH_USER: str = ""
    SSH_PASSWORD: str = ""

    # Zendesk
    ZENDESK_SUBDOMAIN: str = ""
    ZENDESK_EMAIL: str = ""
    ZENDESK_TOKEN: str = ""
    REQUESTS_PER_MINUTE: int = DEFAULT_REQUESTS_PER_MINUTE
    VERIFY_SSL: bool = True

    # Cerb5 storage & data quirks
    CERB5_STORAGE_PATH: str = ""
    ATTACHMENTS_OVER_SFTP: bool = False
    ATTACHMENT_STAGING_DIR: str = "attachments"
    SOURCE_TIMEZONE: str = "UTC"
    SPAM_BUCKET_ID: int = DEFAULT_SPAM_BUCKET_ID

    # Cerb5 worker id -> Zendesk agent id, e.g. OWNER_MAP_3=777777777
    OWNER_MAP: Dict[int, int] = field(default_factory=dict)

    @staticmethod
    def from_ini_or_env(path: Path) -> "AppConfig":
        load_dotenv()  # allow .env to supplement
        config = configparser.ConfigParser()
        config.optionxform = str
        env = os.environ

        section: Dict[str, str]
        if path.exists():
            config.read(path)
            logger.info(f"Loaded configuration from {path}")
            section = dict(config['DEFAULT'])
        else:
            logger.warning("Config file not found, using environment variables only")
            section = {}

        def get(name: str, default: Optional[str] = None) -> Optional[str]:
            return section.get(name) or env.get(name) or default

        owner_map: Dict[int, int] = {}
        for k, v in {**env, **section}.items():
            if str(k).startswith('OWNER_MAP_') and v:
                try:
                    owner_map[int(str(k)[len('OWNER_MAP_'):])] = int(v)
                except ValueError:
                    logger.warning("Ignoring malformed owner mapping %s=%s", k, v)

        required = {
            'MYSQL_HOST': get('MYSQL_HOST'),
            'MYSQL_DB': get('MYSQL_DB'),
            'MYSQL_USER': get('MYSQL_USER'),
            'MYSQL_PASSWORD': get('MYSQL_PASSWORD'),
            'ZENDESK_SUBDOMAIN': get('ZENDESK_SUBDOMAIN'),
            'ZENDESK_EMAIL': get('ZENDESK_EMAIL'),
            'ZENDESK_TOKEN': get('ZENDESK_TOKEN'),
        }
        missing = [k for k, v in required.items() if not v]
        if missing:
            for k in missing:
                logger.error(f"Missing required config value: {k}")
            raise SystemExit(1)

        cfg = AppConfig(
            MYSQL_HOST=required['MYSQL_HOST'],
            MYSQL_PORT=int(get('MYSQL_PORT', str(DEFAULT_MYSQL_PORT))),
            MYSQL_DB=required['MYSQL_DB'],
            MYSQL_USER=required['MYSQL_USER'],
            MYSQL_PASSWORD=required['MYSQL_PASSWORD'],
            MYSQL_CHARSET=get('MYSQL_CHARSET', 'utf8mb4') or 'utf8mb4',
            SSH_HOST=get('SSH_HOST', ''),
            SSH_PORT=int(get('SSH_PORT', str(DEFAULT_SSH_PORT))),
            SSH_USER=get('SSH_USER', ''),
            SSH_PASSWORD=get('SSH_PASSWORD', ''),
            ZENDESK_SUBDOMAIN=required['ZENDESK_SUBDOMAIN'],
            ZENDESK_EMAIL=required['ZENDESK_EMAIL'],
            ZENDESK_TOKEN=required['ZENDESK_TOKEN'],
            REQUESTS_PER_MINUTE=int(get('REQUESTS_PER_MINUTE', str(DEFAULT_REQUESTS_PER_MINUTE))),
            VERIFY_SSL=_parse_bool(get('VERIFY_SSL'), default=True),
            CERB5_STORAGE_PATH=get('CERB5_STORAGE_PATH', ''),
            ATTACHMENTS_OVER_SFTP=_parse_bool(get('ATTACHMENTS_OVER_SFTP'), default=False),
            ATTACHMENT_STAGING_DIR=get('ATTACHMENT_STAGING_DIR', 'attachments'),
            SOURCE_TIMEZONE=get('SOURCE_TIMEZONE', 'UTC'),
            SPAM_BUCKET_ID=int(get('SPAM_BUCKET_ID', str(DEFAULT_SPAM_BUCKET_ID))),
            OWNER_MAP=owner_map,
        )

        logger.info(
            "Config summary: MYSQL_HOST=%s MYSQL_PORT=%s MYSQL_DB=%s ZENDESK=%s.zendesk.com "
            "ZENDESK_EMAIL=%s ZENDESK_TOKEN=%s REQUESTS_PER_MINUTE=%s OWNERS_MAPPED=%s",
            cfg.MYSQL_HOST, cfg.MYSQL_PORT, cfg.MYSQL_DB, cfg.ZENDESK_SUBDOMAIN,
            cfg.ZENDESK_EMAIL, redact(cfg.ZENDESK_TOKEN), cfg.REQUESTS_PER_MINUTE, len(owner_map),
        )
        return cfg

# --------------------------------------------------------------------------------------
# Context managers for external resources
# --------------------------------------------------------------------------------------

@contextlib.contextmanager
def ssh_tunnel(cfg: AppConfig):
    """Forward local port to remote MySQL via SSH if SSH creds are provided.
    Always binds 127.0.0.1:<local_port> → <SSH_HOST>:3306
    """
    if not cfg.SSH_HOST:
        logger.info("SSH tunnel not configured; connecting directly to MySQL")
        yield None
        return

    local_port = cfg.MYSQL_PORT or DEFAULT_MYSQL_PORT
    server = SSHTunnelForwarder(
        (cfg.SSH_HOST, cfg.SSH_PORT),
        ssh_username=cfg.SSH_USER,
        ssh_password=cfg.SSH_PASSWORD,
        remote_bind_address=('127.0.0.1', 3306),
        local_bind_address=('127.0.0.1', local_port),
    )
    try:
        server.start()
        logger.info("🛡️  SSH tunnel established: 127.0.0.1:%s → %s:3306", server.local_bind_port, cfg.SSH_HOST)
        yield server
    finally:
        with contextlib.suppress(Exception):
            server.stop()
            logger.info("SSH tunnel closed.")


@contextlib.contextmanager
def ssh_client(cfg: AppConfig):
    if not (cfg.SSH_HOST and cfg.ATTACHMENTS_OVER_SFTP):
        yield None
        return
    ssh = paramiko.SSHClient()
    ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    ssh.connect(hostname=cfg.SSH_HOST, port=cfg.SSH_PORT, username=cfg.SSH_USER, password=cfg.SSH_PASSWORD)
    try:
        yield ssh
    finally:
        with contextlib.suppress(Exception):
            ssh.close()
            logger.info("SSH client closed.")


@contextlib.contextmanager
def sftp_from_ssh(ssh: Optional[paramiko.SSHClient]):
    sftp = None
    try:
        if ssh:
            sftp = ssh.open_sftp()
        yield sftp
    finally:
        if sftp:
            sftp.close()

# --------------------------------------------------------------------------------------
# MySQL
# --------------------------------------------------------------------------------------

def mysql_pool(cfg: AppConfig) -> mysql.connector.pooling.MySQLConnectionPool:
    try:
        pool = mysql.connector.pooling.MySQLConnectionPool(
            pool_name="cerb5_pool",
            pool_size=DEFAULT_POOL_SIZE,
            host=cfg.MYSQL_HOST,
            port=cfg.MYSQL_PORT,
            database=cfg.MYSQL_DB,
            user=cfg.MYSQL_USER,
            password=cfg.MYSQL_PASSWORD,
            charset=cfg.MYSQL_CHARSET,
            autocommit=True,
        )
        logger.info("✅ MySQL pool ready @ %s:%s/%s", cfg.MYSQL_HOST, cfg.MYSQL_PORT, cfg.MYSQL_DB)
        return pool
    except mysql.connector.Error as e:
        logger.error("MySQL Connection Error: %s", e)
        raise SystemExit(1)

# --------------------------------------------------------------------------------------
# Cerb5 records
# --------------------------------------------------------------------------------------

@dataclass(frozen=True)
class LegacyTicket:
    id: int
    mask: str
    subject: str
    org_id: int
    requester_address_id: int
    owner_id: int
    created: int
    updated: int
    is_closed: bool = False
    is_waiting: bool = False
    is_deleted: bool = False
    bucket_id: int = 0

    @classmethod
    def from_row(cls, row: dict) -> "LegacyTicket":
        return cls(
            id=int(row['id']),
            mask=row['mask'],
            subject=row.get('subject') or '',
            org_id=int(row.get('org_id') or 0),
            requester_address_id=int(row.get('first_wrote_address_id') or 0),
            owner_id=int(row.get('owner_id') or 0),
            created=int(row.get('created_date') or 0),
            updated=int(row.get('updated_date') or 0),
            is_closed=bool(row.get('is_closed')),
            is_waiting=bool(row.get('is_waiting')),
            is_deleted=bool(row.get('is_deleted')),
            bucket_id=int(row.get('bucket_id') or 0),
        )

    def is_migratable(self, spam_bucket_id: int = DEFAULT_SPAM_BUCKET_ID) -> bool:
        return not self.is_deleted and self.bucket_id != spam_bucket_id


@dataclass(frozen=True)
class LegacyMessage:
    id: int
    ticket_id: int
    address_id: int
    body: str
    created: int
    is_outgoing: bool = False

    @classmethod
    def from_row(cls, row: dict) -> "LegacyMessage":
        return cls(
            id=int(row['id']),
            ticket_id=int(row.get('ticket_id') or 0),
            address_id=int(row.get('address_id') or 0),
            body=row.get('data') or '',
            created=int(row.get('created') or 0),
            is_outgoing=bool(row.get('is_outgoing')),
        )


@dataclass(frozen=True)
class LegacyComment:
    id: int
    context: str
    context_id: int
    address_id: int
    body: str
    created: int

    @classmethod
    def from_row(cls, row: dict) -> "LegacyComment":
        return cls(
            id=int(row['id']),
            context=row.get('context') or '',
            context_id=int(row.get('context_id') or 0),
            address_id=int(row.get('address_id') or 0),
            body=row.get('comment') or '',
            created=int(row.get('created') or 0),
        )


@dataclass(frozen=True)
class LegacyAddress:
    id: int
    email: str
    first_name: str = ''
    last_name: str = ''
    org_id: int = 0

    @classmethod
    def from_row(cls, row: dict) -> "LegacyAddress":
        return cls(
            id=int(row['id']),
            email=(row.get('email') or '').strip(),
            first_name=row.get('first_name') or '',
            last_name=row.get('last_name') or '',
            org_id=int(row.get('contact_org_id') or 0),
        )


@dataclass(frozen=True)
class LegacyOrganization:
    id: int
    name: str

    @classmethod
    def from_row(cls, row: dict) -> "LegacyOrganization":
        return cls(id=int(row['id']), name=row.get('name') or '')


@dataclass(frozen=True)
class LegacyAttachment:
    id: int
    name: str
    storage_key: str

    @classmethod
    def from_row(cls, row: dict) -> "LegacyAttachment":
        return cls(id=int(row['id']), name=row.get('name') or '', storage_key=row.get('storage_key') or '')

# --------------------------------------------------------------------------------------
# Cerb5 data access (read only)
# --------------------------------------------------------------------------------------

class Cerb5Store:
    """Read-only queries against the Cerb5 database."""

    def __init__(self, pool, spam_bucket_id: int = DEFAULT_SPAM_BUCKET_ID):
        self.pool = pool
        self.spam_bucket_id = spam_bucket_id

    def _fetchall(self, sql: str, params: Tuple = ()) -> List[dict]:
        conn = self.pool.get_connection()
        cursor = conn.cursor(dictionary=True)
        try:
            cursor.execute(sql, params)
            return cursor.fetchall()
        finally:
            cursor.close(); conn.close()

    def eligible_tickets(self, after_id: Optional[int] = None) -> List[LegacyTicket]:
        """Tickets that are neither deleted nor in the spam bucket, oldest id first."""
        sql = "SELECT * FROM ticket WHERE is_deleted = 0 AND bucket_id != %s"
        params: Tuple = (self.spam_bucket_id,)
        if after_id is not None:
            sql += " AND id > %s"
            params += (after_id,)
        sql += " ORDER BY id ASC"
        tickets = [LegacyTicket.from_row(r) for r in self._fetchall(sql, params)]
        return [t for t in tickets if t.is_migratable(self.spam_bucket_id)]

    def ticket_by_mask(self, mask: str) -> Optional[LegacyTicket]:
        rows = self._fetchall("SELECT * FROM ticket WHERE mask = %s", (mask,))
        return LegacyTicket.from_row(rows[0]) if rows else None

    def messages_for_ticket(self, ticket: LegacyTicket) -> List[LegacyMessage]:
        rows = self._fetchall(
            "SELECT m.id AS id, m.ticket_id AS ticket_id, m.created_date AS created, "
            "m.address_id AS address_id, m.is_outgoing AS is_outgoing, s.data AS data "
            "FROM message m "
            "LEFT JOIN storage_message_content s ON s.id = m.storage_key "
            "WHERE m.ticket_id = %s ORDER BY m.created_date ASC, m.id ASC",
            (ticket.id,),
        )
        return [LegacyMessage.from_row(r) for r in rows]

    def comments_for_ticket(self, ticket: LegacyTicket,
                            messages: Sequence[LegacyMessage]) -> List[LegacyComment]:
        """Ticket-level and message-level comments as one chronological list."""
        rows = self._fetchall(
            "SELECT * FROM comment WHERE context = %s AND context_id = %s ORDER BY created ASC",
            (CONTEXT_TICKET, ticket.id),
        )
        if messages:
            message_ids = [m.id for m in messages]
            placeholders = ', '.join(['%s'] * len(message_ids))
            rows += self._fetchall(
                f"SELECT * FROM comment WHERE context = %s AND context_id IN ({placeholders}) "
                f"ORDER BY created ASC",
                (CONTEXT_MESSAGE, *message_ids),
            )
        comments = [LegacyComment.from_row(r) for r in rows]
        return sorted(comments, key=lambda c: (c.created, c.id))

    def attachments_for_message(self, message: LegacyMessage) -> List[LegacyAttachment]:
        rows = self._fetchall(
            "SELECT a.id AS id, a.display_name AS name, a.storage_key AS storage_key "
            "FROM attachment a LEFT JOIN attachment_link al ON a.id = al.attachment_id "
            "WHERE al.context = %s AND a.display_name != %s AND al.context_id = %s",
            (CONTEXT_MESSAGE, ORIGINAL_MESSAGE_ATTACHMENT, message.id),
        )
        return [LegacyAttachment.from_row(r) for r in rows]

    def organization(self, org_id: int) -> Optional[LegacyOrganization]:
        rows = self._fetchall("SELECT * FROM contact_org WHERE id = %s", (org_id,))
        return LegacyOrganization.from_row(rows[0]) if rows else None

    def address(self, address_id: int) -> Optional[LegacyAddress]:
        rows = self._fetchall("SELECT * FROM address WHERE id = %s", (address_id,))
        return LegacyAddress.from_row(rows[0]) if rows else None

# --------------------------------------------------------------------------------------
# Zendesk
# --------------------------------------------------------------------------------------

class RateGovernor:
    """Minimum-interval gate in front of every Zendesk request.

    ``throttle()`` returns no sooner than ``min_interval`` seconds after the
    previous ``throttle()`` returned, measured on a monotonic clock.
    """

    def __init__(self, min_interval: float,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.min_interval = max(0.0, float(min_interval))
        self._clock = clock
        self._sleep = sleep
        self._last: Optional[float] = None

    @classmethod
    def per_minute(cls, requests_per_minute: int, **kwargs) -> "RateGovernor":
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        return cls(60.0 / requests_per_minute, **kwargs)

    def throttle(self) -> None:
        now = self._clock()
        if self._last is not None:
            wait = self._last + self.min_interval - now
            if wait > 0:
                self._sleep(wait)
                now = self._clock()
        self._last = now


class ZendeskError(Exception):
    def __init__(self, message: str, status: Optional[int] = None, body: Optional[str] = None):
        if body:
            message = f"{message}: {body[:500]}"
        super().__init__(message)
        self.status = status
        self.body = body


def _retry_after(resp: requests.Response) -> Optional[float]:
    value = resp.headers.get('Retry-After') if resp.headers else None
    try:
        return float(value) if value else None
    except ValueError:
        return None


class ZendeskClient:
    """The handful of Zendesk REST v2 calls the migration needs."""

    RETRY_STATUSES = {429, 500, 502, 503, 504}

    def __init__(self, subdomain: str, email: str, token: str, governor: RateGovernor,
                 session: Optional[requests.Session] = None,
                 retries: int = 3, backoff: float = 1.5, timeout: int = 30,
                 sleep: Callable[[float], None] = time.sleep):
        self.base_url = f"https://{subdomain}.zendesk.com/api/v2"
        self.governor = governor
        self.session = session or requests.Session()
        self.session.auth = (f"{email}/token", token)
        self.retries = retries
        self.backoff = backoff
        self.timeout = timeout
        self._sleep = sleep

    def _request(self, method: str, path: str, **kwargs) -> dict:
        url = f"{self.base_url}/{path.lstrip('/')}"
        for attempt in range(1, self.retries + 1):
            self.governor.throttle()
            try:
                resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
            except (ConnectionError, Timeout) as e:
                if attempt == self.retries:
                    raise ZendeskError(f"{method} {url} failed: {e}") from e
                sleep_s = self.backoff ** attempt
                logger.warning("Network error on %s %s (%s). Retrying in %.1fs...", method, url, e, sleep_s)
                self._sleep(sleep_s)
                continue

            if resp.status_code in self.RETRY_STATUSES and attempt < self.retries:
                sleep_s = _retry_after(resp) or self.backoff ** attempt
                logger.warning("Zendesk returned %s on %s %s. Retrying in %.1fs...",
                               resp.status_code, method, url, sleep_s)
                self._sleep(sleep_s)
                continue
            if not resp.ok:
                raise ZendeskError(f"{method} {url} returned {resp.status_code}",
                                   status=resp.status_code, body=resp.text)
            if not resp.content:
                return {}
            try:
                data = resp.json()
            except ValueError as e:
                raise ZendeskError(f"{method} {url} returned non-JSON {resp.status_code}",
                                   status=resp.status_code, body=resp.text) from e
            if not isinstance(data, dict):
                raise ZendeskError(f"{method} {url} returned unexpected JSON",
                                   status=resp.status_code, body=resp.text)
            return data
        raise RuntimeError("unreachable")

    def import_ticket(self, ticket: dict) -> int:
        """Backdated create; Zendesk sends no notifications for imports."""
        data = self._request('POST', 'imports/tickets.json', json={'ticket': ticket})
        return data['ticket']['id']

    def find_tickets_by_external_id(self, external_id: str) -> List[dict]:
        data = self._request('GET', 'tickets.json', params={'external_id': external_id})
        return data.get('tickets') or []

    def autocomplete_organizations(self, name: str) -> List[dict]:
        data = self._request('GET', 'organizations/autocomplete.json', params={'name': name})
        return data.get('organizations') or []

    def create_organization(self, name: str) -> dict:
        data = self._request('POST', 'organizations.json', json={'organization': {'name': name}})
        return data.get('organization') or {}

    def search_users(self, query: str) -> List[dict]:
        data = self._request('GET', 'users/search.json', params={'query': query})
        return data.get('users') or []

    def create_user(self, name: str, email: str) -> dict:
        data = self._request('POST', 'users.json', json={'user': {'name': name, 'email': email}})
        return data.get('user') or {}

    def upload_attachment(self, path: Path, name: str) -> str:
        # read up front so a retried request resends the whole file
        content = Path(path).read_bytes()
        data = self._request('POST', 'uploads.json', params={'filename': name or Path(path).name},
                             data=content, headers={'Content-Type': 'application/binary'})
        return data['upload']['token']


def zendesk_client(cfg: AppConfig, governor: RateGovernor) -> ZendeskClient:
    session = requests.Session()
    session.verify = cfg.VERIFY_SSL
    if not cfg.VERIFY_SSL:
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
    return ZendeskClient(cfg.ZENDESK_SUBDOMAIN, cfg.ZENDESK_EMAIL, cfg.ZENDESK_TOKEN,
                         governor, session=session)

# --------------------------------------------------------------------------------------
# Organisation / user resolution
# --------------------------------------------------------------------------------------

class ResolutionStatus(Enum):
    RESOLVED = "resolved"
    UNRESOLVED = "unresolved"  # nothing to map: missing or invalid in Cerb5
    FAILED = "failed"  # Zendesk lookup or create went wrong


@dataclass(frozen=True)
class Resolution:
    status: ResolutionStatus
    remote_id: Optional[int] = None
    reason: str = ""

    @classmethod
    def resolved(cls, remote_id: int) -> "Resolution":
        return cls(ResolutionStatus.RESOLVED, remote_id)

    @classmethod
    def unresolved(cls, reason: str) -> "Resolution":
        return cls(ResolutionStatus.UNRESOLVED, None, reason)

    @classmethod
    def failed(cls, reason: str) -> "Resolution":
        return cls(ResolutionStatus.FAILED, None, reason)


_NO_ID = Resolution.unresolved("no id")


class EntityResolver:
    """Find-or-create a Zendesk entity for a Cerb5 id.

    Every outcome, including "unresolved" and "failed", is remembered for the
    rest of the run, so each Cerb5 id costs at most one lookup-or-create
    sequence however many tickets reference it.
    """

    def __init__(self, store: Cerb5Store, zendesk: ZendeskClient):
        self.store = store
        self.zendesk = zendesk
        self._cache: Dict[int, Resolution] = {}

    def __len__(self) -> int:
        return len(self._cache)

    def resolve(self, legacy_id: Optional[int]) -> Optional[int]:
        return self.outcome(legacy_id).remote_id

    def outcome(self, legacy_id: Optional[int]) -> Resolution:
        if not legacy_id:
            return _NO_ID
        cached = self._cache.get(legacy_id)
        if cached is None:
            cached = self._cache[legacy_id] = self._resolve(legacy_id)
        return cached

    def _resolve(self, legacy_id: int) -> Resolution:
        raise NotImplementedError


class OrganizationResolver(EntityResolver):
    """Cerb5 contact_org → Zendesk organisation, matched on name."""

    @staticmethod
    def _key(name: Optional[str]) -> str:
        return (name or '').strip().upper()

    def _resolve(self, org_id: int) -> Resolution:
        org = self.store.organization(org_id)
        if org is None:
            return Resolution.unresolved(f"organisation {org_id} not in Cerb5")
        if not org.name.strip():
            return Resolution.unresolved(f"organisation {org_id} has no name")

        # autocomplete is a prefix search; only an exact name counts as a match
        try:
            for candidate in self.zendesk.autocomplete_organizations(org.name.strip()):
                if self._key(candidate.get('name')) == self._key(org.name):
                    return Resolution.resolved(candidate['id'])
        except (ZendeskError, KeyError) as e:
            logger.error("Organisation lookup failed for %s: %s", org.name, e)
            return Resolution.failed(str(e))

        try:
            created = self.zendesk.create_organization(org.name.strip())
        except ZendeskError as e:
            created = {}
            reason = str(e)
        else:
            reason = "no organisation in response"
        if created.get('id'):
            logger.info("Created Zendesk organisation %s for %s", created['id'], org.name)
            return Resolution.resolved(created['id'])

        logger.error("We could not create an organisation on Zendesk for: %s (%s)", org.name, reason)
        return Resolution.failed(reason)


class IdentityResolver(EntityResolver):
    """Cerb5 address → Zendesk user, matched on email."""

    def __init__(self, store: Cerb5Store, zendesk: ZendeskClient,
                 rewrites: Optional[Dict[str, str]] = None):
        super().__init__(store, zendesk)
        self.rewrites = RESERVED_EMAIL_REWRITES if rewrites is None else rewrites

    def _resolve(self, address_id: int) -> Resolution:
        address = self.store.address(address_id)
        if address is None:
            return Resolution.unresolved(f"address {address_id} not in Cerb5")

        email = rewrite_reserved_email(address.email, self.rewrites)
        # Zendesk rejects these anyway
        if not is_valid_email(email):
            logger.warning("Skipping invalid email %r (address %s)", address.email, address_id)
            return Resolution.unresolved(f"invalid email {address.email!r}")

        # user search is fuzzy; verify the email ourselves
        try:
            for user in self.zendesk.search_users(email):
                if (user.get('email') or '').lower() == email.lower():
                    return Resolution.resolved(user['id'])
        except (ZendeskError, KeyError) as e:
            logger.error("User lookup failed for %s: %s", email, e)
            return Resolution.failed(str(e))

        name = display_name(address.first_name, address.last_name, email)
        try:
            created = self.zendesk.create_user(name, email)
        except ZendeskError as e:
            created = {}
            reason = str(e)
        else:
            reason = "no user in response"
        if created.get('id'):
            logger.info("Created Zendesk user %s for %s", created['id'], email)
            return Resolution.resolved(created['id'])

        logger.error("We could not create a user on Zendesk for: %s (%s)", email, reason)
        return Resolution.failed(reason)


class OwnerResolver:
    """Cerb5 workers are mapped to Zendesk agents by hand (OWNER_MAP_<id> in config)."""

    def __init__(self, owner_map: Optional[Dict[int, int]] = None):
        self.owner_map = dict(owner_map or {})

    def resolve(self, owner_id: Optional[int]) -> Optional[int]:
        return self.owner_map.get(owner_id) if owner_id else None

# --------------------------------------------------------------------------------------
# Attachments & comments
# --------------------------------------------------------------------------------------

class AttachmentUploader:
    """Upload a message's Cerb5 attachments to Zendesk and hand back the tokens.

    Files live under ``<storage_root>/attachments/<storage_key>``, either on this
    machine or, when ``sftp`` is given, on the Cerb5 host (fetched into
    ``staging_dir`` first). Missing files and failed uploads are logged and
    counted; they never fail the ticket.
    """

    def __init__(self, store: Cerb5Store, zendesk: ZendeskClient, storage_root: str,
                 sftp: Optional[paramiko.SFTPClient] = None,
                 staging_dir: Path = Path("attachments")):
        self.store = store
        self.zendesk = zendesk
        self.storage_root = storage_root
        self.sftp = sftp
        self.staging_dir = Path(staging_dir)
        self.failures = 0

    def local_path(self, attachment: LegacyAttachment) -> Optional[Path]:
        if self.sftp is None:
            path = Path(self.storage_root) / "attachments" / attachment.storage_key
            return path if path.is_file() else None

        remote = f"{self.storage_root.rstrip('/')}/attachments/{attachment.storage_key}"
        dest = self.staging_dir / attachment.storage_key
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.sftp.get(remote, str(dest))
        except OSError as e:
            logger.warning("Could not fetch %s over SFTP: %s", remote, e)
            return None
        return dest

    def tokens_for_message(self, message: LegacyMessage) -> List[str]:
        tokens: List[str] = []
        for attachment in self.store.attachments_for_message(message):
            path = self.local_path(attachment)
            if path is None:
                logger.error("Could not find attachment %s (%s) on message %s",
                             attachment.name, attachment.storage_key, message.id)
                self.failures += 1
                continue
            try:
                tokens.append(self.zendesk.upload_attachment(path, attachment.name))
                logger.info("✅ Uploaded %s", attachment.name)
            except (ZendeskError, OSError, KeyError) as e:
                logger.error("❌ Upload failed for %s: %s", attachment.name, e)
                self.failures += 1
        return tokens


class CommentTransformer:
    """Turn a ticket's messages and private comments into Zendesk comments.

    Messages become public comments, comments become private ones. All public
    comments come first, then all private ones, each group oldest first. The two
    groups are deliberately not interleaved.
    """

    def __init__(self, identities: IdentityResolver,
                 attachments: Optional[AttachmentUploader] = None,
                 tz=pytz.UTC):
        self.identities = identities
        self.attachments = attachments
        self.tz = tz

    def build(self, ticket: LegacyTicket, messages: Iterable[LegacyMessage],
              comments: Iterable[LegacyComment]) -> List[dict]:
        public = [self._from_message(m) for m in sorted(messages, key=lambda m: (m.created, m.id))
                  if not is_blank(m.body)]
        private = [self._from_comment(c) for c in sorted(comments, key=lambda c: (c.created, c.id))
                   if not is_blank(c.body)]
        return public + private

    def _from_message(self, message: LegacyMessage) -> dict:
        tokens = self.attachments.tokens_for_message(message) if self.attachments else []
        comment = {
            'author_id': self.identities.resolve(message.address_id),
            'public': True,
            'value': message.body,
            'created_at': to_zendesk_time(message.created, self.tz),
        }
        if tokens:
            comment['uploads'] = tokens
        return comment

    def _from_comment(self, comment: LegacyComment) -> dict:
        return {
            'author_id': self.identities.resolve(comment.address_id),
            'public': False,
            'value': comment.body,
            'created_at': to_zendesk_time(comment.created, self.tz),
        }

# --------------------------------------------------------------------------------------
# Ticket migration
# --------------------------------------------------------------------------------------

class MigrationError(Exception):
    def __init__(self, mask: str, cause: BaseException):
        super().__init__(f"Ticket {mask} failed: {cause}")
        self.mask = mask
        self.cause = cause


def derive_status(ticket: LegacyTicket) -> str:
    if ticket.is_closed:
        return 'closed'
    if ticket.is_waiting:
        return 'pending'
    return 'open'


class TicketMigrator:
    def __init__(self, store: Cerb5Store, zendesk: ZendeskClient,
                 organizations: OrganizationResolver, identities: IdentityResolver,
                 owners: OwnerResolver, transformer: CommentTransformer, tz=pytz.UTC):
        self.store = store
        self.zendesk = zendesk
        self.organizations = organizations
        self.identities = identities
        self.owners = owners
        self.transformer = transformer
        self.tz = tz

    def build_ticket(self, ticket: LegacyTicket) -> dict:
        org_id = self.organizations.resolve(ticket.org_id)
        requester_id = self.identities.resolve(ticket.requester_address_id)
        assignee_id = self.owners.resolve(ticket.owner_id)

        messages = self.store.messages_for_ticket(ticket)
        comments = self.store.comments_for_ticket(ticket, messages)

        payload = {
            'requester_id': requester_id,
            'submitter_id': requester_id,
            'assignee_id': assignee_id,
            'subject': ticket.subject,
            'external_id': ticket.mask,
            'created_at': to_zendesk_time(ticket.created, self.tz),
            'updated_at': to_zendesk_time(ticket.updated, self.tz),
            'status': derive_status(ticket),
            'comments': self.transformer.build(ticket, messages, comments),
        }
        if org_id is not None:
            payload['organization_id'] = org_id
        return payload

    def migrate(self, ticket: LegacyTicket) -> int:
        """Import one ticket and return its Zendesk id."""
        try:
            return self.zendesk.import_ticket(self.build_ticket(ticket))
        except Exception as e:
            raise MigrationError(ticket.mask, e) from e

    def already_migrated(self, ticket: LegacyTicket) -> bool:
        return any(t.get('external_id') == ticket.mask
                   for t in self.zendesk.find_tickets_by_external_id(ticket.mask))


def build_migrator(cfg: AppConfig, store: Cerb5Store, zendesk: ZendeskClient,
                   sftp: Optional[paramiko.SFTPClient] = None) -> TicketMigrator:
    tz = pytz.timezone(cfg.SOURCE_TIMEZONE)
    identities = IdentityResolver(store, zendesk)
    attachments = None
    if cfg.CERB5_STORAGE_PATH:
        attachments = AttachmentUploader(store, zendesk, cfg.CERB5_STORAGE_PATH, sftp=sftp,
                                         staging_dir=Path(cfg.ATTACHMENT_STAGING_DIR))
    else:
        logger.warning("CERB5_STORAGE_PATH not set; attachments will not be migrated")
    return TicketMigrator(
        store, zendesk,
        organizations=OrganizationResolver(store, zendesk),
        identities=identities,
        owners=OwnerResolver(cfg.OWNER_MAP),
        transformer=CommentTransformer(identities, attachments, tz),
        tz=tz,
    )


@dataclass
class MigrationReport:
    total: int = 0
    migrated: Dict[str, int] = field(default_factory=dict)  # mask -> Zendesk id
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)  # mask -> error
    last_id: Optional[int] = None
    interrupted: bool = False

    def summary(self) -> str:
        text = f"Migrated {len(self.migrated)} of {self.total} ticket(s)"
        if self.skipped:
            text += f", {len(self.skipped)} already in Zendesk"
        if self.failed:
            text += f", {len(self.failed)} failed"
        if self.interrupted:
            text += f" (interrupted; resume with --after-id {self.last_id})"
        return text


def shutting_down() -> bool:
    return _SHUTTING_DOWN


def run_migration(tickets: Sequence[LegacyTicket], migrator: TicketMigrator,
                  skip_existing: bool = False,
                  skipped_file: Optional[Path] = None,
                  should_stop: Callable[[], bool] = shutting_down) -> MigrationReport:
    """Migrate tickets one by one; a failing ticket never stops the run."""
    report = MigrationReport(total=len(tickets))
    with tqdm(total=len(tickets), desc="Migrating tickets", unit="ticket") as pbar:
        for ticket in tickets:
            if should_stop():
                report.interrupted = True
                logger.warning("Stopping before %s. Last processed Cerb5 id: %s", ticket.mask, report.last_id)
                break
            try:
                if skip_existing and migrator.already_migrated(ticket):
                    report.skipped.append(ticket.mask)
                    logger.info("⏭️  %s is already in Zendesk, skipping", ticket.mask)
                else:
                    report.migrated[ticket.mask] = migrator.migrate(ticket)
                    logger.info("✅ %s (id %s) → Zendesk #%s", ticket.mask, ticket.id, report.migrated[ticket.mask])
            except Exception as e:
                report.failed[ticket.mask] = str(e)
                logger.exception("❌ %s (id %s) failed: %s", ticket.mask, ticket.id, e)
                if skipped_file is not None:
                    with skipped_file.open('a', encoding='utf-8') as f:
                        f.write(f"{ticket.mask}\t{e}\n")
            finally:
                report.last_id = ticket.id
                pbar.set_postfix(id=ticket.id)
                pbar.update(1)
    return report

# --------------------------------------------------------------------------------------
# CLI / Main
# --------------------------------------------------------------------------------------

def _install_signal_handlers():
    def _handler(signum, frame):
        global _SHUTTING_DOWN
        _SHUTTING_DOWN = True
        logger.warning("Received signal %s. Finishing the current ticket and shutting down…", signum)
    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Migrate Cerb5 tickets to Zendesk")
    parser.add_argument('--config', default='config.ini', help="path to config file (default: config.ini)")
    parser.add_argument('--after-id', type=int, default=None,
                        help="only migrate tickets with a Cerb5 id greater than this (resume)")
    parser.add_argument('--mask', default=None, help="migrate a single ticket by its Cerb5 mask")
    parser.add_argument('--limit', type=int, default=None, help="stop after this many tickets")
    parser.add_argument('--skip-existing', action='store_true',
                        help="skip tickets whose mask is already a Zendesk external id")
    return parser.parse_args(argv)


def select_tickets(store: Cerb5Store, args: argparse.Namespace) -> List[LegacyTicket]:
    if args.mask:
        ticket = store.ticket_by_mask(args.mask)
        if ticket is None:
            logger.error("No Cerb5 ticket with mask %s", args.mask)
            return []
        if not ticket.is_migratable(store.spam_bucket_id):
            logger.warning("Ticket %s is deleted or spam; not migrating it", args.mask)
            return []
        return [ticket]

    tickets = store.eligible_tickets(args.after_id)
    if args.limit:
        tickets = tickets[:args.limit]
    return tickets


def main(argv: Optional[Sequence[str]] = None) -> None:
    _setup_logging()
    _install_signal_handlers()

    args = parse_args(argv)
    cfg = AppConfig.from_ini_or_env(Path(args.config))

    with ssh_tunnel(cfg), ssh_client(cfg) as ssh, sftp_from_ssh(ssh) as sftp:
        pool = mysql_pool(cfg)
        store = Cerb5Store(pool, cfg.SPAM_BUCKET_ID)

        governor = RateGovernor.per_minute(cfg.REQUESTS_PER_MINUTE)
        zendesk = zendesk_client(cfg, governor)
        migrator = build_migrator(cfg, store, zendesk, sftp)

        tickets = select_tickets(store, args)
        if not tickets:
            print("No tickets found. Exiting.")
            return
        print(f"Found {len(tickets)} ticket(s) to migrate.")

        skipped = Path(f"skipped_tickets_{datetime.now().strftime('%Y%m%d_%H%M%S')}.txt")
        report = run_migration(tickets, migrator, skip_existing=args.skip_existing, skipped_file=skipped)

    if report.failed:
        logger.warning("Failed tickets written to %s", skipped)
    if migrator.transformer.attachments and migrator.transformer.attachments.failures:
        logger.warning("%s attachment(s) could not be migrated", migrator.transformer.attachments.failures)
    print(f"✅ {report.summary()}.")


if __name__ == "__main__":
    try:
        main()
    except SystemExit:
        # Already logged – just honor exit code
        raise
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        raise SystemExit(1)
