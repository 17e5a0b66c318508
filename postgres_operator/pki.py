"""
Certificate authority and leaf certificates

The root authority is generated once per namespace and reused by every
cluster in it. Leaf certificates are reissued only when they stop matching:
a different root, different DNS names, or close to expiring.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

logger = logging.getLogger("postgres-operator.pki")

ROOT_COMMON_NAME = "postgres-operator-ca"
ROOT_VALIDITY = timedelta(days=3650)
LEAF_VALIDITY = timedelta(days=365)
LEAF_RENEWAL_WINDOW = timedelta(days=30)

# Keys of the root CA Secret
ROOT_CERTIFICATE_KEY = "root.crt"
ROOT_PRIVATE_KEY_KEY = "root.key"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _private_key_pem(key: ec.EllipticCurvePrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _certificate_pem(certificate: x509.Certificate) -> bytes:
    return certificate.public_bytes(serialization.Encoding.PEM)


@dataclass
class RootCertificateAuthority:
    certificate: x509.Certificate
    private_key: ec.EllipticCurvePrivateKey

    @classmethod
    def generate(cls) -> "RootCertificateAuthority":
        key = ec.generate_private_key(ec.SECP256R1())
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, ROOT_COMMON_NAME)])
        now = _now()
        certificate = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=1))
            .not_valid_after(now + ROOT_VALIDITY)
            .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
            .add_extension(x509.KeyUsage(
                digital_signature=False, content_commitment=False,
                key_encipherment=False, data_encipherment=False,
                key_agreement=False, key_cert_sign=True, crl_sign=True,
                encipher_only=False, decipher_only=False,
            ), critical=True)
            .sign(key, hashes.SHA384())
        )
        logger.info("Generated new root certificate authority")
        return cls(certificate=certificate, private_key=key)

    @classmethod
    def from_pem(cls, certificate: bytes, private_key: bytes) -> Optional["RootCertificateAuthority"]:
        """Load a stored authority; None when the material is unusable"""
        try:
            loaded_cert = x509.load_pem_x509_certificate(certificate)
            loaded_key = serialization.load_pem_private_key(private_key, password=None)
        except ValueError as e:
            logger.warning(f"Stored root certificate authority is invalid: {e}")
            return None
        if not isinstance(loaded_key, ec.EllipticCurvePrivateKey):
            logger.warning("Stored root certificate authority has an unexpected key type")
            return None
        if loaded_cert.public_key().public_numbers() != loaded_key.public_key().public_numbers():
            logger.warning("Stored root certificate does not match its private key")
            return None
        return cls(certificate=loaded_cert, private_key=loaded_key)

    @property
    def certificate_pem(self) -> bytes:
        return _certificate_pem(self.certificate)

    @property
    def private_key_pem(self) -> bytes:
        return _private_key_pem(self.private_key)

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        now = now or _now()
        return self.certificate.not_valid_before_utc <= now < self.certificate.not_valid_after_utc


@dataclass
class LeafCertificate:
    certificate: x509.Certificate
    private_key: ec.EllipticCurvePrivateKey

    @classmethod
    def issue(cls, root: RootCertificateAuthority, common_name: str,
              dns_names: Sequence[str]) -> "LeafCertificate":
        key = ec.generate_private_key(ec.SECP256R1())
        now = _now()
        certificate = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
            .issuer_name(root.certificate.subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=1))
            .not_valid_after(now + LEAF_VALIDITY)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(x509.KeyUsage(
                digital_signature=True, content_commitment=False,
                key_encipherment=True, data_encipherment=False,
                key_agreement=False, key_cert_sign=False, crl_sign=False,
                encipher_only=False, decipher_only=False,
            ), critical=True)
            .add_extension(x509.ExtendedKeyUsage([
                ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH,
            ]), critical=False)
            .add_extension(x509.SubjectAlternativeName(
                [x509.DNSName(name) for name in dns_names]), critical=False)
            .sign(root.private_key, hashes.SHA384())
        )
        return cls(certificate=certificate, private_key=key)

    @classmethod
    def from_pem(cls, certificate: bytes, private_key: bytes) -> Optional["LeafCertificate"]:
        try:
            loaded_cert = x509.load_pem_x509_certificate(certificate)
            loaded_key = serialization.load_pem_private_key(private_key, password=None)
        except ValueError:
            return None
        if not isinstance(loaded_key, ec.EllipticCurvePrivateKey):
            return None
        return cls(certificate=loaded_cert, private_key=loaded_key)

    @property
    def certificate_pem(self) -> bytes:
        return _certificate_pem(self.certificate)

    @property
    def private_key_pem(self) -> bytes:
        return _private_key_pem(self.private_key)

    @property
    def dns_names(self) -> List[str]:
        try:
            extension = self.certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        except x509.ExtensionNotFound:
            return []
        return extension.value.get_values_for_type(x509.DNSName)

    def is_current(self, root: RootCertificateAuthority, dns_names: Sequence[str],
                   now: Optional[datetime] = None) -> bool:
        """Whether this certificate can be kept as is"""
        now = now or _now()
        if sorted(self.dns_names) != sorted(dns_names):
            return False
        if now + LEAF_RENEWAL_WINDOW >= self.certificate.not_valid_after_utc:
            return False
        if self.certificate.public_key().public_numbers() != self.private_key.public_key().public_numbers():
            return False
        try:
            self.certificate.verify_directly_issued_by(root.certificate)
        except (InvalidSignature, ValueError, TypeError):
            return False
        return True


def cluster_dns_names(service_names: Sequence[str], namespace: str, domain: str = "cluster.local") -> List[str]:
    """Every name a client may use to reach the given Services"""
    names = []
    for service in service_names:
        names.extend([
            f"{service}.{namespace}.svc.{domain}",
            f"{service}.{namespace}.svc",
            f"{service}.{namespace}",
            service,
        ])
    return names
