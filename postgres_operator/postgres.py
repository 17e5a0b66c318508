"""
PostgreSQL access rules and server parameters

HBA entries are kept in two ordered groups: mandatory rules always come
first, default rules last. Parameters are kept the same way except that a
mandatory value overrides a default one with the same name.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional


def quote_identifier(value: str) -> str:
    """Quote a name for pg_hba.conf, doubling any embedded quote"""
    return '"' + value.replace('"', '""') + '"'


class HostBasedAuthentication:
    """
    One pg_hba.conf entry, built fluently

        HostBasedAuthentication().tcp().user("app").method("md5")
    """

    def __init__(self):
        self._origin = "host"
        self._database = "all"
        self._user = "all"
        self._address = "all"
        self._method = ""
        self._options: Dict[str, str] = {}

    def local(self) -> "HostBasedAuthentication":
        self._origin = "local"
        return self

    def tcp(self) -> "HostBasedAuthentication":
        self._origin = "host"
        return self

    def tls(self) -> "HostBasedAuthentication":
        self._origin = "hostssl"
        return self

    def database(self, name: str) -> "HostBasedAuthentication":
        self._database = quote_identifier(name)
        return self

    def replication(self) -> "HostBasedAuthentication":
        self._database = "replication"
        return self

    def user(self, name: str) -> "HostBasedAuthentication":
        self._user = quote_identifier(name)
        return self

    def method(self, name: str, **options: str) -> "HostBasedAuthentication":
        self._method = name
        self._options = dict(options)
        return self

    def __str__(self) -> str:
        fields = [self._origin, self._database, self._user]
        if self._origin != "local":
            fields.append(self._address)
        fields.append(self._method)
        for key in sorted(self._options):
            fields.append(f'{key}="{self._options[key]}"')
        return " ".join(fields)

    def __repr__(self) -> str:
        return f"HostBasedAuthentication({str(self)!r})"

    def __eq__(self, other) -> bool:
        return isinstance(other, HostBasedAuthentication) and str(self) == str(other)

    def __hash__(self) -> int:
        return hash(str(self))


@dataclass
class HBAs:
    """Ordered access rules: mandatory entries first, then defaults"""
    mandatory: List[HostBasedAuthentication] = field(default_factory=list)
    default: List[HostBasedAuthentication] = field(default_factory=list)

    def lines(self) -> List[str]:
        return [str(hba) for hba in self.mandatory + self.default]


class ParameterSet(dict):
    """PostgreSQL parameters keyed by their case-insensitive name"""

    def add(self, name: str, value: str):
        self[name.lower()] = value

    def get_value(self, name: str) -> Optional[str]:
        return self.get(name.lower())


@dataclass
class Parameters:
    mandatory: ParameterSet = field(default_factory=ParameterSet)
    default: ParameterSet = field(default_factory=ParameterSet)

    def merged(self) -> Dict[str, str]:
        values = dict(self.default)
        values.update(self.mandatory)
        return values


def cluster_hbas(names, pooler_rules: List[HostBasedAuthentication]) -> HBAs:
    """
    Access rules for a cluster

    The four replication and bootstrap rules always come first, then whatever
    the pooler contributes, then the TLS catch-all.
    """
    hbas = HBAs()
    hbas.mandatory.append(HostBasedAuthentication().local().user(names.bootstrap_user).method("peer"))
    hbas.mandatory.append(HostBasedAuthentication().tcp().user(names.replication_user).replication().method("md5"))
    hbas.mandatory.append(HostBasedAuthentication().tcp().user(names.replication_user).database("postgres").method("md5"))
    hbas.mandatory.append(HostBasedAuthentication().tcp().user(names.replication_user).method("reject"))
    hbas.mandatory.extend(pooler_rules)

    # The "md5" method verifies passwords stored as either MD5 or SCRAM-SHA-256
    hbas.default.append(HostBasedAuthentication().tls().method("md5"))
    return hbas


def cluster_parameters(names) -> Parameters:
    parameters = Parameters()
    parameters.mandatory.add("wal_level", "logical")
    parameters.mandatory.add("ssl", "on")
    parameters.mandatory.add("ssl_cert_file", f"{names.pg_tls_directory}/tls.crt")
    parameters.mandatory.add("ssl_key_file", f"{names.pg_tls_directory}/tls.key")
    parameters.mandatory.add("ssl_ca_file", f"{names.pg_tls_directory}/ca.crt")
    parameters.default.add("jit", "off")
    parameters.default.add("password_encryption", "scram-sha-256")
    return parameters
