# tests/conftest.py

import pathlib
import sys

import pytest

# Ensure repo root (containing the circles_node package) is on sys.path
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from circles_node.circles_runtime.collaborators import (
    Capability,
    LoggingNotificationService,
    RequestContext,
    StaticAuthorization,
)
from circles_node.circles_runtime.goals import InMemoryGoalService
from circles_node.circles_runtime.service import CirclesCore
from circles_node.circles_runtime.stages import Stage
from circles_node.storage.proposal_store import ProposalStore
from circles_node.storage.ranked_list_store import RankedListStore

CIRCLE = "circle-1"


class FakeClock:
    """Monotonic test clock; every read advances by `step` seconds."""

    def __init__(self, start: float = 1_000.0, step: float = 1.0):
        self.now = start
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def authz():
    a = StaticAuthorization(moderators=["@mod"])
    a.grant("@author", CIRCLE, Capability.PROPOSALS_CREATE)
    a.grant("@reviewer", CIRCLE, Capability.PROPOSALS_REVIEW)
    a.grant("@voter", CIRCLE, Capability.PROPOSALS_VOTE)
    a.grant("@resolver", CIRCLE, Capability.PROPOSALS_RESOLVE)
    for user in ("@u1", "@u2", "@u3"):
        a.grant(user, CIRCLE, Capability.PROPOSALS_RANK, Capability.GOALS_RANK)
    return a


@pytest.fixture
def notifier():
    return LoggingNotificationService()


@pytest.fixture
def core(clock, authz, notifier):
    c = CirclesCore(
        ProposalStore(clock=clock),
        RankedListStore(clock=clock),
        authz,
        InMemoryGoalService(clock=clock),
        notifier,
        staleness_inline=True,
        clock=clock,
    )
    yield c
    c.close()


def ctx(user_id):
    return RequestContext(user_id=user_id)


def make_proposal(core, name="Proposal", stage=Stage.DRAFT, author="@author", circle=CIRCLE):
    """Insert a proposal directly in the store and force it to `stage`."""
    p = core.proposals.insert(circle, author, name)
    if stage != Stage.DRAFT:
        p = core.proposals.update_stage(p.id, Stage.DRAFT, {"stage": stage.value})
    return p
