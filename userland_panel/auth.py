"""
Credential gate for the UserLAnd Panel gateway.

Supports:
  - Login validated against the host's own sshd (the userland SSH server
    is used as a trust oracle, so the panel shares its accounts)
  - Two token classes: session tokens (24h) and proxy tokens (5min)
  - Expiry through a min-heap swept periodically
  - Rate limiting for brute force protection

Tokens live in server memory only. Restarting the server logs everyone out.
"""

import asyncio
import heapq
import logging
import secrets
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

import asyncssh

from userland_panel.errors import AuthError, ForbiddenError, RateLimitError, ValidationError

logger = logging.getLogger(__name__)

# Rate limiting configuration
RATE_LIMIT_MAX_ATTEMPTS = 10  # Max failed attempts before lockout
RATE_LIMIT_WINDOW_MINUTES = 15  # Lockout window in minutes


class RateLimiter:
    """
    Rate limiter for brute force protection.

    Tracks failed login attempts per client IP address and blocks further
    attempts from that address after max_attempts within the window.
    Usernames are never a lockout key.
    """

    def __init__(self, max_attempts: int = RATE_LIMIT_MAX_ATTEMPTS,
                 window_minutes: int = RATE_LIMIT_WINDOW_MINUTES):
        self._max_attempts = max_attempts
        self._window = timedelta(minutes=window_minutes)
        # IP -> list of attempt timestamps
        self._attempts: dict[str, list[datetime]] = defaultdict(list)

    def _cleanup_old_attempts(self, ip_address: str) -> None:
        """Remove attempts older than the rate limit window."""
        cutoff = datetime.now() - self._window
        recent = [t for t in self._attempts.get(ip_address, []) if t > cutoff]
        if recent:
            self._attempts[ip_address] = recent
        else:
            self._attempts.pop(ip_address, None)

    def is_blocked(self, ip_address: str) -> bool:
        """Check if the IP is currently blocked."""
        self._cleanup_old_attempts(ip_address)
        return len(self._attempts.get(ip_address, [])) >= self._max_attempts

    def record_failure(self, ip_address: str) -> None:
        """Record a failed login attempt."""
        self._cleanup_old_attempts(ip_address)
        self._attempts[ip_address].append(datetime.now())

    def clear_on_success(self, ip_address: str) -> None:
        """Clear failed attempts after successful login."""
        self._attempts.pop(ip_address, None)

    def get_remaining_attempts(self, ip_address: str) -> int:
        """Get remaining attempts before lockout."""
        self._cleanup_old_attempts(ip_address)
        return max(0, self._max_attempts - len(self._attempts.get(ip_address, [])))


# =============================================================================
# TOKENS
# =============================================================================


class TokenKind(str, Enum):
    SESSION = "session"
    PROXY = "proxy"


@dataclass
class TokenRecord:
    """What a bearer token grants. Never renewed; removed on expiry or logout."""
    username: str
    kind: TokenKind
    expires_at: float


class TokenStore:
    """
    In-memory token table with heap-ordered expiry.

    All mutation happens synchronously inside a single event-loop callback,
    so no lock is needed. Each issued token gets exactly one heap entry;
    sweep() pops entries whose deadline has passed and drops the matching
    record if it is still present.
    """

    def __init__(self, session_ttl: float = 24 * 60 * 60, proxy_ttl: float = 5 * 60,
                 clock: Callable[[], float] = time.monotonic):
        self._ttl = {TokenKind.SESSION: session_ttl, TokenKind.PROXY: proxy_ttl}
        self._clock = clock
        self._tokens: dict[str, TokenRecord] = {}
        self._expiry: list[tuple[float, str]] = []

    def __len__(self) -> int:
        return len(self._tokens)

    def __contains__(self, token: str) -> bool:
        return self.lookup(token) is not None

    def issue(self, username: str, kind: TokenKind = TokenKind.SESSION) -> str:
        """Mint a random opaque token for username."""
        token = secrets.token_urlsafe(32)
        expires_at = self._clock() + self._ttl[kind]
        self._tokens[token] = TokenRecord(username=username, kind=kind, expires_at=expires_at)
        heapq.heappush(self._expiry, (expires_at, token))
        return token

    def lookup(self, token: Optional[str]) -> Optional[TokenRecord]:
        """Return the live record for token, or None."""
        if not token:
            return None
        record = self._tokens.get(token)
        if record is None:
            return None
        if record.expires_at <= self._clock():
            # Past its deadline but not swept yet
            del self._tokens[token]
            return None
        return record

    def revoke(self, token: Optional[str]) -> bool:
        """Remove a token. Absent tokens are not an error."""
        if not token:
            return False
        return self._tokens.pop(token, None) is not None

    def sweep(self) -> int:
        """Drop every token whose TTL has lapsed. Returns count removed."""
        now = self._clock()
        removed = 0
        while self._expiry and self._expiry[0][0] <= now:
            _, token = heapq.heappop(self._expiry)
            if self._tokens.pop(token, None) is not None:
                removed += 1
        return removed


# =============================================================================
# CREDENTIAL GATE
# =============================================================================


class CredentialGate:
    """
    Issues and checks bearer tokens.

    Authentication flow:
        1. Client posts username + password to /api/auth/login
        2. verify_credentials() opens an SSH connection to the local sshd
           with those credentials and closes it straight away
        3. On success a session token is minted and returned
        4. authenticate() checks the token on every protected request
        5. logout() removes it

    The password is only held for the duration of the probe.
    """

    def __init__(self, tokens: TokenStore, ssh_host: str = "localhost", ssh_port: int = 8022,
                 timeout: float = 5.0, rate_limiter: Optional[RateLimiter] = None):
        self.tokens = tokens
        self._ssh_host = ssh_host
        self._ssh_port = ssh_port
        self._timeout = timeout
        self._rate_limiter = rate_limiter or RateLimiter()

    async def verify_credentials(self, username: str, password: str) -> bool:
        """Return True if the local sshd accepts username/password."""
        try:
            conn = await asyncio.wait_for(
                asyncssh.connect(
                    self._ssh_host,
                    port=self._ssh_port,
                    username=username,
                    password=password,
                    known_hosts=None,
                    client_keys=None,
                    agent_path=None,
                    preferred_auth="password,keyboard-interactive",
                ),
                timeout=self._timeout,
            )
        except asyncssh.PermissionDenied:
            return False
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
            logger.warning("SSH probe to %s:%d failed: %s", self._ssh_host, self._ssh_port, e)
            return False

        conn.close()
        try:
            await conn.wait_closed()
        except asyncssh.Error:
            pass
        return True

    async def login(self, username: str, password: str, client_ip: str = "unknown") -> str:
        """Validate credentials and return a new session token."""
        if not username or not password:
            raise ValidationError("Username and password required")

        if self._rate_limiter.is_blocked(client_ip):
            logger.warning("Login blocked for user '%s' from %s (rate limited)", username, client_ip)
            raise RateLimitError("Too many failed attempts. Try again later.")

        if not await self.verify_credentials(username, password):
            self._rate_limiter.record_failure(client_ip)
            logger.info("Failed login for user '%s' from %s (%d attempts remaining)",
                        username, client_ip,
                        self._rate_limiter.get_remaining_attempts(client_ip))
            raise AuthError("Invalid username or password")

        self._rate_limiter.clear_on_success(client_ip)
        token = self.tokens.issue(username, TokenKind.SESSION)
        logger.info("Session created for user '%s'", username)
        return token

    def logout(self, token: Optional[str]) -> None:
        """Revoke a session token (idempotent)."""
        if self.tokens.revoke(token):
            logger.info("Session token revoked")

    def issue_proxy_token(self, username: str) -> str:
        """Mint a short-lived token that only opens the terminal proxy."""
        return self.tokens.issue(username, TokenKind.PROXY)

    def authenticate(self, token: Optional[str], kind: TokenKind = TokenKind.SESSION) -> TokenRecord:
        """
        Resolve token to its record.

        Raises AuthError if the token is missing, unknown or expired, and
        ForbiddenError if it is valid but of a different class.
        """
        record = self.tokens.lookup(token)
        if record is None:
            raise AuthError()
        if record.kind != kind:
            raise ForbiddenError()
        return record


def parse_bearer(header: Optional[str]) -> Optional[str]:
    """Extract the token from an 'Authorization: Bearer <token>' header."""
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()
