"""
Pytest configuration and shared fixtures.

This file adds the parent directory to the Python path so that tests
can import from the domain, repositories, services and api modules.
"""

import sys
from pathlib import Path
from typing import Callable, List, Tuple

import pytest

# Add the project root to the Python path
# so tests can import domain, repositories, etc.
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from domain.commission import CommissionPolicy  # noqa: E402
from domain.deal import Deal  # noqa: E402
from domain.partner import Partner  # noqa: E402
from domain.stage import DealStage, Role  # noqa: E402
from repositories.memory_store import InMemoryNetworkStore  # noqa: E402
from services import deal_service, network_service  # noqa: E402

# submitted -> ... -> approved, i.e. one step short of the first qualifying stage.
STAGES_BEFORE_LIVE: Tuple[DealStage, ...] = (
    DealStage.QUOTE_REQUEST_RECEIVED,
    DealStage.QUOTE_SENT,
    DealStage.QUOTE_APPROVED,
    DealStage.SIGNUP_SUBMITTED,
    DealStage.AGREEMENT_SENT,
    DealStage.SIGNED_AWAITING_DOCS,
    DealStage.UNDER_REVIEW,
    DealStage.APPROVED,
)


@pytest.fixture
def store() -> InMemoryNetworkStore:
    return InMemoryNetworkStore(lock_timeout=1.0)


@pytest.fixture
def policy() -> CommissionPolicy:
    return CommissionPolicy.from_mapping({
        "name": "test-upline",
        "currency": "GBP",
        "default": {
            "1": {"rate": "0.60"},
            "2": {"rate": "0.20"},
            "3": {"rate": "0.10"},
        },
    })


@pytest.fixture
def chain(store: InMemoryNetworkStore) -> Tuple[Partner, Partner, Partner]:
    """A sponsors B, B sponsors C. Returns (A, B, C)."""

    a = network_service.recruit_partner(store, first_name="Alice", last_name="Archer")
    b = network_service.recruit_partner(
        store, first_name="Bob", last_name="Baker", sponsor_referral_code=a.referral_code
    )
    c = network_service.recruit_partner(
        store, first_name="Cara", last_name="Cole", sponsor_partner_id=b.partner_id
    )
    return a, b, c


@pytest.fixture
def advance(store: InMemoryNetworkStore, policy: CommissionPolicy) -> Callable[..., List[deal_service.TransitionOutcome]]:
    """Apply a sequence of admin transitions to a deal and return the outcomes."""

    def _advance(deal: Deal, stages=STAGES_BEFORE_LIVE) -> List[deal_service.TransitionOutcome]:
        return [
            deal_service.transition_deal(store, deal.deal_id, stage, Role.ADMIN, policy)
            for stage in stages
        ]

    return _advance
