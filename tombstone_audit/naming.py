from dataclasses import dataclass
from typing import List, Optional

DOMAIN_SEPARATOR = "."
COMPONENT_MARKER = "DC="
PATH_SEPARATOR = ","


@dataclass(frozen=True)
class NameParts:
    short_name: str
    domain_components: List[str]

    @property
    def search_base(self) -> str:
        return PATH_SEPARATOR.join(f"{COMPONENT_MARKER}{dc}" for dc in self.domain_components)

    @property
    def server(self) -> str:
        return DOMAIN_SEPARATOR.join(self.domain_components)


def decompose_hostname(hostname: Optional[str]) -> Optional[NameParts]:
    """Split an FQDN into its computer name and domain components.

    ``host1.corp.example.com`` -> ``host1`` / ``[corp, example, com]``.
    Returns None for single-label names: without domain components there is
    no search base to scope a directory query to.
    """
    if not hostname:
        return None
    labels = [label for label in hostname.strip().split(DOMAIN_SEPARATOR) if label]
    if len(labels) < 2:
        return None
    return NameParts(short_name=labels[0], domain_components=labels[1:])
