import re
from enum import IntEnum
from typing import Dict, List, Optional

# Names that carry no taxonomic information in SILVA/GTDB style references
PLACEHOLDER_PATTERN = re.compile(
    r"^(uncultured|unidentified|unknown|metagenome|unassigned)\b",
    re.IGNORECASE,
)


class TaxonomicRanks(IntEnum):
    """Enumeration of supported taxonomic levels."""
    DOMAIN = 0
    PHYLUM = 1
    CLASS = 2
    ORDER = 3
    FAMILY = 4
    GENUS = 5
    SPECIES = 6

    @property
    def name(self) -> str:
        return super().name.lower()

    @property
    def prefix(self) -> str:
        return f"{self.name[0]}__"

    @property
    def child(self) -> Optional["TaxonomicRanks"]:
        """Get the child (more specific) taxonomic rank."""
        try:
            return TaxonomicRanks(self.value + 1)
        except ValueError:
            return None  # Already at lowest rank

    @property
    def parent(self) -> Optional["TaxonomicRanks"]:
        """Get the parent (broader) taxonomic rank."""
        try:
            return TaxonomicRanks(self.value - 1)
        except ValueError:
            return None  # Already at highest rank

    @classmethod
    def from_name(cls, rank: str) -> "TaxonomicRanks":
        """Get enum member from rank name.

        ``kingdom`` is accepted as an alias for ``domain`` since DADA2
        formatted references label the first rank that way.
        """
        rank = rank.upper()
        if rank == "KINGDOM":
            rank = "DOMAIN"
        try:
            return cls[rank]
        except KeyError:
            raise ValueError(f"Invalid taxonomic rank: {rank}")

    @classmethod
    def from_prefix(cls, prefix: str) -> "TaxonomicRanks":
        """Get enum member from taxonomic prefix."""
        if not hasattr(cls, '_prefix_to_rank'):
            cls._prefix_to_rank = {rank.prefix: rank for rank in cls}
            cls._prefix_to_rank["k__"] = cls.DOMAIN

        if prefix not in cls._prefix_to_rank:
            raise ValueError(f"Invalid taxonomic prefix: {prefix}")

        return cls._prefix_to_rank[prefix]

    @classmethod
    def column_names(cls) -> List[str]:
        """Column names of a taxonomy table, broadest first."""
        return [rank.name for rank in cls.iter_from_domain()]

    @classmethod
    def iter_from_domain(cls):
        """Yield ranks from DOMAIN (broadest) to SPECIES (most specific)."""
        rank = cls.DOMAIN
        while rank is not None:
            yield rank
            rank = rank.child

    @classmethod
    def iter_from_species(cls):
        """Yield ranks from SPECIES (most specific) to DOMAIN (broadest)."""
        rank = cls.SPECIES
        while rank is not None:
            yield rank
            rank = rank.parent

    def iter_up(self):
        """Yield ranks from the current rank up to DOMAIN (inclusive)."""
        rank = self
        while rank is not None:
            yield rank
            rank = rank.parent

    def iter_down(self):
        """Yield ranks from the current rank down to SPECIES (inclusive)."""
        rank = self
        while rank is not None:
            yield rank
            rank = rank.child


def clean_taxon_name(name: Optional[str]) -> Optional[str]:
    """Strip whitespace and map placeholders to ``None``."""
    if name is None:
        return None
    name = name.strip()
    if not name or PLACEHOLDER_PATTERN.match(name):
        return None
    return name


def parse_lineage(lineage: Optional[str]) -> Dict[str, Optional[str]]:
    """Split a lineage string into a rank -> name mapping.

    Two layouts are understood:

    - prefixed (QIIME 2 / GTDB): ``d__Bacteria; p__Firmicutes; g__``
    - positional (DADA2 reference FASTA): ``Bacteria;Firmicutes;Bacilli;``

    A token whose first three characters look like a rank prefix is placed
    by its prefix; everything else is placed by position. Empty tokens and
    placeholder names become ``None``.

    Args:
        lineage: Lineage string, possibly ``None`` or empty

    Returns:
        Dict with one key per rank name, broadest first
    """
    parsed: Dict[str, Optional[str]] = {
        name: None for name in TaxonomicRanks.column_names()
    }
    if lineage is None:
        return parsed

    tokens = [t.strip() for t in lineage.split(";")]
    for position, token in enumerate(tokens):
        if not token:
            continue
        rank: Optional[TaxonomicRanks] = None
        if len(token) >= 3 and token[1:3] == "__":
            try:
                rank = TaxonomicRanks.from_prefix(token[:3].lower())
                token = token[3:]
            except ValueError:
                rank = None
        if rank is None:
            if position >= len(TaxonomicRanks):
                continue
            rank = TaxonomicRanks(position)
        parsed[rank.name] = clean_taxon_name(token)
    return parsed


def format_lineage(
    taxa: Dict[str, Optional[str]],
    rank: TaxonomicRanks = TaxonomicRanks.SPECIES,
) -> str:
    """Render a rank -> name mapping as a prefixed lineage down to ``rank``."""
    parts = []
    for r in TaxonomicRanks.DOMAIN.iter_down():
        if r > rank:
            break
        parts.append(f"{r.prefix}{taxa.get(r.name) or ''}")
    return ";".join(parts)
