"""TLS certificates for proxied applications.

Certificates live in ``<certs_dir>/<server_name>/`` as ``fullchain.pem`` and
``privkey.pem``. An optional ``CertificateProvider`` (ACME client, internal
CA) is asked first; when there is none or it fails, a self-signed
certificate is generated with ``openssl`` so the proxy can still start.

Example usage:
    >>> manager = CertificateManager(ProxyConfig())
    >>> result = await manager.ensure("shop.example.com", email="ops@example.com")
    >>> result.paths.fullchain
    PosixPath('/opt/unideploy/certs/shop.example.com/fullchain.pem')
"""

from __future__ import annotations

import asyncio
import os
import shutil
import tempfile
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field

from unideploy.config import ProxyConfig
from unideploy.errors import ErrorKind, OperationError
from unideploy.logging import get_logger

RSA_KEY_SIZE = 2048

OPENSSL_CONFIG = """[ req ]
default_bits       = {key_size}
default_md         = sha256
prompt             = no
encrypt_key        = no
distinguished_name = req_dn
x509_extensions    = v3_ca

[ req_dn ]
CN = {server_name}
O = unideploy self-signed certificate

[ v3_ca ]
subjectKeyIdentifier = hash
authorityKeyIdentifier = keyid:always,issuer
basicConstraints = critical, CA:true
keyUsage = critical, digitalSignature, cRLSign, keyCertSign
subjectAltName = {alt_names}
"""


class CertificatePaths(BaseModel):
    """Locations of a server's certificate files."""

    directory: Path
    fullchain: Path
    private_key: Path

    @classmethod
    def for_server(cls, certs_dir: Path, server_name: str) -> CertificatePaths:
        directory = certs_dir / server_name
        return cls(
            directory=directory,
            fullchain=directory / "fullchain.pem",
            private_key=directory / "privkey.pem",
        )

    @property
    def present(self) -> bool:
        return self.fullchain.is_file() and self.private_key.is_file()


class CertificateResult(BaseModel):
    """Outcome of ensuring a certificate.

    Attributes:
        success: Certificate files are in place
        server_name: Server name the certificate covers
        paths: Certificate file locations
        source: existing, provider or self_signed
        error: Structured error on failure
    """

    success: bool
    server_name: str
    paths: CertificatePaths
    source: str = Field(default="existing")
    error: OperationError | None = None


class CertificateProvider(Protocol):
    """Issues certificates into the given paths."""

    async def ensure_certificate(
        self, server_name: str, email: str, paths: CertificatePaths
    ) -> bool: ...


def subject_alt_names(server_name: str) -> str:
    """SAN list: wildcards also cover the base and www domains, plain names their www variant."""
    names = [server_name]
    if server_name.startswith("*."):
        base = server_name[2:]
        names += [base, f"www.{base}"]
    elif not server_name.startswith("www."):
        names.append(f"www.{server_name}")
    return ",".join(f"DNS:{name}" for name in names)


class CertificateManager:
    """Makes sure a server name has usable certificate files.

    Attributes:
        config: Proxy configuration (certs_dir, self-signed validity)
        provider: Optional external certificate provider
    """

    def __init__(
        self, config: ProxyConfig, provider: CertificateProvider | None = None
    ) -> None:
        self.config = config
        self.provider = provider
        self.logger = get_logger(__name__)

    def paths(self, server_name: str) -> CertificatePaths:
        return CertificatePaths.for_server(self.config.certs_dir, server_name)

    async def ensure(self, server_name: str, email: str = "") -> CertificateResult:
        paths = self.paths(server_name)
        if paths.present:
            self.logger.debug("certificate_present", server_name=server_name)
            return CertificateResult(success=True, server_name=server_name, paths=paths)

        paths.directory.mkdir(parents=True, exist_ok=True)

        if self.provider is not None:
            try:
                if await self.provider.ensure_certificate(server_name, email, paths) and paths.present:
                    self.logger.info("certificate_issued", server_name=server_name)
                    return CertificateResult(
                        success=True, server_name=server_name, paths=paths, source="provider"
                    )
                self.logger.warning("certificate_provider_failed", server_name=server_name)
            except Exception as e:
                self.logger.warning(
                    "certificate_provider_error",
                    server_name=server_name,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        return await self.generate_self_signed(server_name, paths)

    async def _openssl(self, *args: str) -> tuple[bool, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                "openssl",
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return False, "openssl not found"
        _, stderr = await proc.communicate()
        return proc.returncode == 0, stderr.decode("utf-8", errors="replace").strip()

    async def generate_self_signed(
        self, server_name: str, paths: CertificatePaths
    ) -> CertificateResult:
        """Generate a self-signed key and certificate with openssl."""
        self.logger.info("generating_self_signed_certificate", server_name=server_name)

        fd, config_path = tempfile.mkstemp(prefix="unideploy-ssl-", suffix=".cnf")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(
                    OPENSSL_CONFIG.format(
                        key_size=RSA_KEY_SIZE,
                        server_name=server_name,
                        alt_names=subject_alt_names(server_name),
                    )
                )

            ok, stderr = await self._openssl(
                "genrsa", "-out", str(paths.private_key), str(RSA_KEY_SIZE)
            )
            if ok:
                os.chmod(paths.private_key, 0o600)
                ok, stderr = await self._openssl(
                    "req",
                    "-new",
                    "-x509",
                    "-sha256",
                    "-key",
                    str(paths.private_key),
                    "-out",
                    str(paths.fullchain),
                    "-days",
                    str(self.config.self_signed_days),
                    "-config",
                    config_path,
                )
        finally:
            os.unlink(config_path)

        if not ok:
            self.logger.error("self_signed_certificate_failed", server_name=server_name, error=stderr)
            return CertificateResult(
                success=False,
                server_name=server_name,
                paths=paths,
                source="self_signed",
                error=OperationError(
                    kind=ErrorKind.PREPARATION,
                    message=f"Cannot generate certificate for {server_name}: {stderr}",
                ),
            )

        os.chmod(paths.fullchain, 0o644)
        for name in ("chain.pem", "cert.pem"):
            shutil.copyfile(paths.fullchain, paths.directory / name)

        self.logger.info("self_signed_certificate_generated", server_name=server_name)
        return CertificateResult(
            success=True, server_name=server_name, paths=paths, source="self_signed"
        )
