# -*- coding: utf-8 -*-
"""
Controlled Vocabularies
=======================

Recognized terms for variable names, variable types, method types, action
types, sampled media and sampling feature types. Terms follow the
camelCase form of the ODM2 controlled vocabularies.

Whether an unknown term is rejected or accepted with a warning is a
policy of the store (VocabularyPolicy). Applications extend the lists per
store handle with ControlledVocabularies.extend(); an unknown term is
never accepted silently.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, Iterable, Optional, Set, Union

from .exceptions import InvalidVocabulary

logger = logging.getLogger(__name__)


class VocabularyPolicy(Enum):
    """How unknown controlled terms are handled."""
    STRICT = "strict"
    WARN = "warn"

    @classmethod
    def coerce(cls, value: Optional[Union[str, "VocabularyPolicy"]]) -> "VocabularyPolicy":
        if value is None:
            return cls.STRICT
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(
                f"Unknown vocabulary policy {value!r}; expected 'strict' or 'warn'"
            ) from None


VARIABLE_NAMES = frozenset({
    "bodyLength",
    "depth",
    "distance",
    "elevation",
    "gageHeight",
    "groundwaterDepth",
    "offset",
    "pressure",
    "pressureAbsolute",
    "pressureGauge",
    "specificConductance",
    "temperature",
    "waterDepth",
    "waterLevel",
    "wellDepth",
})

VARIABLE_TYPES = frozenset({
    "climate",
    "geology",
    "groundwaterQuality",
    "hydrology",
    "instrumentation",
    "waterQuality",
    "unknown",
})

METHOD_TYPES = frozenset({
    "dataRetrieval",
    "derivation",
    "fieldActivity",
    "instrumentDeployment",
    "observation",
    "simulation",
    "specimenAnalysis",
    "unknown",
})

ACTION_TYPES = frozenset({
    "dataRetrieval",
    "derivation",
    "fieldActivity",
    "instrumentDeployment",
    "observation",
})

SAMPLED_MEDIA = frozenset({
    "air",
    "equipment",
    "groundwater",
    "liquidAqueous",
    "notApplicable",
    "sediment",
    "soil",
    "surfaceWater",
    "unknown",
})

SAMPLING_FEATURE_TYPES = frozenset({
    "borehole",
    "site",
    "specimen",
    "well",
})

DEFAULT_VOCABULARIES: Dict[str, frozenset] = {
    "variable_name": VARIABLE_NAMES,
    "variable_type": VARIABLE_TYPES,
    "method_type": METHOD_TYPES,
    "action_type": ACTION_TYPES,
    "sampled_medium": SAMPLED_MEDIA,
    "sampling_feature_type": SAMPLING_FEATURE_TYPES,
}


class ControlledVocabularies:
    """
    Per-store set of recognized controlled terms.

    Parameters
    ----------
    policy : str or VocabularyPolicy
        STRICT raises InvalidVocabulary for unknown terms, WARN logs a
        warning and accepts them.

    Example
    -------
    >>> vocab = ControlledVocabularies("strict")
    >>> vocab.extend("variable_name", ["sapFlow"])
    >>> vocab.check("variable_name", "sapFlow")
    """

    def __init__(self, policy: Union[str, VocabularyPolicy] = VocabularyPolicy.STRICT):
        self.policy = VocabularyPolicy.coerce(policy)
        self._terms: Dict[str, Set[str]] = {
            field: set(terms) for field, terms in DEFAULT_VOCABULARIES.items()
        }

    @property
    def fields(self) -> Iterable[str]:
        return sorted(self._terms)

    def terms(self, field: str) -> Set[str]:
        """Return a copy of the recognized terms for a field."""
        if field not in self._terms:
            raise KeyError(f"No controlled vocabulary named {field!r}")
        return set(self._terms[field])

    def extend(self, field: str, terms: Iterable[str]) -> None:
        """Add application-specific terms to a vocabulary."""
        if field not in self._terms:
            raise KeyError(f"No controlled vocabulary named {field!r}")
        added = {t for t in terms if t}
        self._terms[field].update(added)
        logger.debug(f"Extended {field} vocabulary with {sorted(added)}")

    def is_known(self, field: str, term: str) -> bool:
        return term in self._terms.get(field, ())

    def check(self, field: str, term: str) -> None:
        """
        Validate a term against the vocabulary under the current policy.

        Raises
        ------
        InvalidVocabulary
            If the term is unknown and the policy is STRICT.
        """
        if self.is_known(field, term):
            return
        if self.policy is VocabularyPolicy.STRICT:
            raise InvalidVocabulary(field, term)
        logger.warning(f"Accepting unrecognized {field} term {term!r} (policy=warn)")
