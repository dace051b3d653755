"""
TLS expiration prober for CertMon.

Connects to a domain, lets the TLS handshake verify the chain and hostname
against the platform trust store, and reports the earliest notAfter of the
certificates the server presented. Interpreters before 3.13 cannot read the
presented chain from an ssl socket, so there the chain is read with pyOpenSSL
over a second connection and matched against the verified leaf.
"""

import select
import socket
import ssl
import time
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from OpenSSL import SSL

DEFAULT_PORT = 443
DEFAULT_TIMEOUT = 10.0


class ProbeError(Exception):
    """Base class for probe failures."""


class ProbeConnectionError(ProbeError):
    """TCP connection, DNS resolution or TLS negotiation failed."""


class ProbeVerificationError(ProbeError):
    """The presented certificate did not verify for the requested hostname."""


class ProbeEmptyChainError(ProbeError):
    """The server completed the handshake without presenting any certificate."""


def _not_after(cert: x509.Certificate) -> datetime:
    # not_valid_after_utc needs cryptography >= 42
    not_after = getattr(cert, "not_valid_after_utc", None)
    if not_after is None:
        not_after = cert.not_valid_after.replace(tzinfo=timezone.utc)
    return not_after


def chain_expirations(der_chain: Sequence[bytes]) -> List[datetime]:
    """
    Parse DER certificates and return their notAfter timestamps in UTC.

    Args:
        der_chain: DER-encoded certificates as presented by the server

    Returns:
        One timezone-aware expiration per certificate, in chain order
    """
    expirations = []
    for position, der in enumerate(der_chain):
        try:
            cert = x509.load_der_x509_certificate(bytes(der))
        except ValueError as e:
            raise ProbeError(f"Could not parse certificate #{position} of chain: {e}") from e
        expirations.append(_not_after(cert))
    return expirations


def earliest_expiration(der_chain: Sequence[bytes]) -> datetime:
    """Return the soonest notAfter across the chain."""
    if not der_chain:
        raise ProbeEmptyChainError("No certificates presented")
    return min(chain_expirations(der_chain))


def _presented_chain(tls_sock: ssl.SSLSocket) -> Optional[List[bytes]]:
    """Return the DER chain the peer sent, leaf first, or None if unreadable."""
    get_chain = getattr(tls_sock, "get_unverified_chain", None)
    if get_chain is None:
        return None
    return [bytes(der) for der in get_chain() or []]


def _wait_socket(sock: socket.socket, deadline: float, writable: bool) -> None:
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise socket.timeout("handshake timed out")
    if writable:
        ready = select.select([], [sock], [], remaining)[1]
    else:
        ready = select.select([sock], [], [], remaining)[0]
    if not ready:
        raise socket.timeout("handshake timed out")


def _fetch_presented_chain(domain: str, port: int, timeout: float) -> List[bytes]:
    """
    Read the peer's certificate chain with pyOpenSSL.

    Used on interpreters whose ssl module only exposes the leaf. No
    verification happens here; the caller compares the leaf against the one
    from its verified handshake.
    """
    context = SSL.Context(SSL.TLS_CLIENT_METHOD)
    context.set_verify(SSL.VERIFY_NONE)

    deadline = time.monotonic() + timeout
    with socket.create_connection((domain, port), timeout=timeout) as sock:
        connection = SSL.Connection(context, sock)
        connection.set_tlsext_host_name(domain.encode("idna"))
        connection.set_connect_state()
        while True:
            try:
                connection.do_handshake()
                break
            except SSL.WantReadError:
                _wait_socket(sock, deadline, writable=False)
            except SSL.WantWriteError:
                _wait_socket(sock, deadline, writable=True)

        chain = connection.get_peer_cert_chain() or []
        return [
            cert.to_cryptography().public_bytes(serialization.Encoding.DER) for cert in chain
        ]


def find_expiration_time(
    domain: str,
    port: int = DEFAULT_PORT,
    timeout: float = DEFAULT_TIMEOUT,
    context: Optional[ssl.SSLContext] = None,
) -> datetime:
    """
    Find the earliest expiration time in the TLS certificate chain for domain.

    Args:
        domain: Hostname to connect to and verify against
        port: TCP port of the TLS service
        timeout: Connect and handshake timeout in seconds
        context: SSL context; defaults to the platform trust store with
            hostname checking enabled

    Returns:
        Earliest notAfter of the presented chain, timezone-aware UTC

    Raises:
        ProbeConnectionError: connection or handshake failure
        ProbeVerificationError: certificate or hostname verification failure
        ProbeEmptyChainError: no certificate presented
        ProbeError: unparseable certificate, or a chain read on a second
            connection that does not start with the verified leaf
    """
    if context is None:
        context = ssl.create_default_context()

    try:
        with socket.create_connection((domain, port), timeout=timeout) as sock:
            with context.wrap_socket(sock, server_hostname=domain) as tls_sock:
                der_chain = _presented_chain(tls_sock)
                verified_leaf = tls_sock.getpeercert(binary_form=True)
    except ssl.SSLCertVerificationError as e:
        reason = getattr(e, "verify_message", None) or e
        raise ProbeVerificationError(f"{domain}: {reason}") from e
    except (ssl.SSLError, OSError) as e:
        raise ProbeConnectionError(f"{domain}:{port}: {e}") from e

    if der_chain is None and verified_leaf:
        try:
            der_chain = _fetch_presented_chain(domain, port, timeout)
        except (SSL.Error, OSError) as e:
            raise ProbeConnectionError(f"{domain}:{port}: reading chain: {e}") from e
        if not der_chain or der_chain[0] != verified_leaf:
            raise ProbeError(f"{domain}: presented chain does not match the verified certificate")

    if not der_chain:
        raise ProbeEmptyChainError(f"{domain}: no certificates presented")

    return earliest_expiration(der_chain)
