"""Best-effort IMAP host discovery from an email domain."""

import logging
from typing import Callable

from .accounts import Account
from .config import MirrorConfig
from .errors import AuthError, ConnectError, ProtocolError
from .session import DEFAULT_PORT, ImapSession, SessionConfig

logger = logging.getLogger(__name__)

PROBE_PASSWORD = "mailmirror-probe"


def email_domain(email: str) -> str:
    if "@" not in email:
        raise ValueError(f"Not an email address: {email!r}")
    return email.rsplit("@", 1)[1].lower()


def candidate_hosts(email: str) -> list[str]:
    """Hosts to try, most likely first."""
    domain = email_domain(email)
    return [f"imap.{domain}", f"mail.{domain}", domain]


def discover_host(
    email: str,
    port: int = DEFAULT_PORT,
    timeout: float = 10.0,
    connect: Callable[[SessionConfig], ImapSession] | None = None,
) -> str:
    """Find a host that speaks IMAP for this address; fall back to imap.<domain>.

    Each candidate is probed with a throwaway password. A login rejection
    proves a live IMAP server; a transport failure rules the candidate out.
    Never raises for unreachable hosts.
    """
    connect = connect or ImapSession.connect
    candidates = candidate_hosts(email)
    logger.info("Discovering IMAP host for %s", email_domain(email))
    for host in candidates:
        config = SessionConfig(
            host=host,
            port=port,
            username=email,
            password=PROBE_PASSWORD,
            verify_tls=False,
            timeout=timeout,
        )
        try:
            session = connect(config)
        except AuthError:
            logger.info("Found IMAP host %s", host)
            return host
        except ProtocolError as e:
            logger.info("Found IMAP host %s (%s)", host, e)
            return host
        except ConnectError as e:
            logger.debug("Ruled out %s: %s", host, e)
            continue
        session.disconnect()
        logger.info("Found IMAP host %s", host)
        return host

    fallback = candidates[0]
    logger.warning("Could not discover IMAP host, defaulting to %s", fallback)
    return fallback


def resolve_host(
    account: Account,
    config: MirrorConfig,
    discover: Callable[..., str] = discover_host,
) -> str:
    """The account's explicit host, else a discovered (or guessed) one.

    Probes always use implicit TLS on the standard port, whatever the
    account's own port and TLS mode.
    """
    if account.host:
        return account.host
    if not config.discovery.enabled:
        return candidate_hosts(account.email)[0]
    return discover(account.email, port=DEFAULT_PORT, timeout=config.discovery.timeout)
