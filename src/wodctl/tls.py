"""Self-signed certificate generation for instance build contexts."""
from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .process import ProcessRunner, failure_detail

LOGGER = logging.getLogger(__name__)

CERT_FILENAME = "cert.pem"
KEY_FILENAME = "cert.key"
CERT_SUBJECT = "/CN=localhost"
CERT_DAYS = 365
KEY_SPEC = "rsa:2048"


@dataclass(frozen=True, slots=True)
class CertificatePaths:
    """Key and certificate locations inside a build context."""

    key: Path
    cert: Path

    @classmethod
    def for_build_context(cls, build_dir: Path) -> CertificatePaths:
        """Return the fixed key/cert paths the Dockerfiles copy from."""
        return cls(key=build_dir / KEY_FILENAME, cert=build_dir / CERT_FILENAME)


def self_signed_certificate_command(
    paths: CertificatePaths,
    *,
    openssl_bin: str = "openssl",
) -> list[str]:
    """Return the ``openssl req`` argv producing an unencrypted self-signed pair."""
    return [
        openssl_bin,
        "req",
        "-newkey",
        KEY_SPEC,
        "-nodes",
        "-keyout",
        str(paths.key),
        "-x509",
        "-days",
        str(CERT_DAYS),
        "-out",
        str(paths.cert),
        "-subj",
        CERT_SUBJECT,
    ]


def generate_self_signed_certificate(
    runner: ProcessRunner,
    build_dir: Path,
    *,
    openssl_bin: str = "openssl",
) -> subprocess.CompletedProcess[str]:
    """Best-effort generation of the build context's TLS pair.

    The outcome is returned but never treated as a failure: a missing pair
    surfaces later when the image build copies it.
    """
    paths = CertificatePaths.for_build_context(build_dir)
    result = runner.run(self_signed_certificate_command(paths, openssl_bin=openssl_bin))
    if result.returncode != 0:
        LOGGER.warning(
            "Certificate generation exited %s: %s", result.returncode, failure_detail(result)
        )
    return result


__all__ = [
    "CERT_FILENAME",
    "CertificatePaths",
    "KEY_FILENAME",
    "generate_self_signed_certificate",
    "self_signed_certificate_command",
]
