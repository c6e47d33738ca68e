"""Chain ID to CCTP domain lookups.

The tables are built once at startup and never mutated. Components receive a
:class:`DomainRegistry` instead of reading module globals, so tests can
substitute alternate tables.

Example::

    from cctp_relay.domain import DEFAULT_DOMAIN_REGISTRY

    domain = DEFAULT_DOMAIN_REGISTRY.domain_for_chain(8453)  # Base -> 6
    transmitter = DEFAULT_DOMAIN_REGISTRY.transmitter_for(domain)
    if transmitter is None:
        ...  # cannot finalise transfers into this domain
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from eth_typing import HexAddress

from cctp_relay.constants import CCTP_DOMAIN_NAMES, CHAIN_ID_TO_CCTP_DOMAIN, MESSAGE_TRANSMITTER_V2_DEPLOYMENTS
from cctp_relay.errors import UnknownChain


@dataclass(frozen=True, slots=True)
class ChainDomain:
    """One blockchain as seen by the bridging protocol."""

    #: Native EVM chain ID
    chain_id: int

    #: CCTP domain ID assigned by Circle
    domain: int

    #: ``MessageTransmitterV2`` address, or ``None`` if the domain is not supported
    transmitter: HexAddress | None

    #: Human-readable chain name for logs
    name: str


class DomainRegistry:
    """Immutable chain ID → domain → transmitter lookups.

    Lookups are safe to call from any thread without synchronisation.
    """

    def __init__(
        self,
        chain_to_domain: Mapping[int, int],
        transmitters: Mapping[int, HexAddress],
        domain_names: Mapping[int, str] | None = None,
    ):
        self._chain_to_domain = MappingProxyType(dict(chain_to_domain))
        self._transmitters = MappingProxyType(dict(transmitters))
        self._domain_names = MappingProxyType(dict(domain_names or {}))
        self._domain_to_chain = MappingProxyType({domain: chain_id for chain_id, domain in self._chain_to_domain.items()})

    def __repr__(self) -> str:
        return f"<DomainRegistry chains={len(self._chain_to_domain)} supported_domains={sorted(self._transmitters)}>"

    def domain_for_chain(self, chain_id: int) -> int:
        """Resolve the CCTP domain of an EVM chain.

        :raise UnknownChain:
            The chain is not in the table. This is a configuration error.
        """
        try:
            return self._chain_to_domain[chain_id]
        except KeyError:
            raise UnknownChain(chain_id) from None

    def transmitter_for(self, domain: int) -> HexAddress | None:
        """Get the ``MessageTransmitterV2`` finalising transfers into a domain.

        :return:
            Contract address, or ``None`` when the domain is unsupported.
        """
        return self._transmitters.get(domain)

    def is_supported(self, domain: int) -> bool:
        return domain in self._transmitters

    def domain_name(self, domain: int) -> str:
        return self._domain_names.get(domain, f"domain-{domain}")

    def chain_for_domain(self, domain: int) -> ChainDomain | None:
        """Reverse lookup, ``None`` if no configured chain maps to the domain."""
        chain_id = self._domain_to_chain.get(domain)
        if chain_id is None:
            return None
        return ChainDomain(
            chain_id=chain_id,
            domain=domain,
            transmitter=self.transmitter_for(domain),
            name=self.domain_name(domain),
        )

    def describe_chain(self, chain_id: int) -> ChainDomain:
        domain = self.domain_for_chain(chain_id)
        return ChainDomain(
            chain_id=chain_id,
            domain=domain,
            transmitter=self.transmitter_for(domain),
            name=self.domain_name(domain),
        )


#: Registry loaded from :mod:`cctp_relay.constants`
DEFAULT_DOMAIN_REGISTRY = DomainRegistry(
    chain_to_domain=CHAIN_ID_TO_CCTP_DOMAIN,
    transmitters=MESSAGE_TRANSMITTER_V2_DEPLOYMENTS,
    domain_names=CCTP_DOMAIN_NAMES,
)
