from __future__ import annotations

from .ca_grants import CaliforniaGrantsSource
from .grants_gov import GrantsGovSource
from .nsf_awards import NsfAwardsSource
from .propublica import ProPublicaSource
from .sam_gov import SamGovSource
from .usaspending import USASpendingSource

__all__ = [
    "CaliforniaGrantsSource",
    "GrantsGovSource",
    "NsfAwardsSource",
    "ProPublicaSource",
    "SamGovSource",
    "USASpendingSource",
]
