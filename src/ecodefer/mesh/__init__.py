"""Mesh delegation layer: peers, importance voting, delegation and carbon accounting."""

from ecodefer.mesh.carbon import CarbonLedger, GridSignal, GridSignalProvider, static_grid
from ecodefer.mesh.delegation import DelegationManager
from ecodefer.mesh.events import MeshEventLog
from ecodefer.mesh.models import (
    Ballot,
    CarbonRecord,
    Delegation,
    DelegationStatus,
    EnergyProfile,
    Importance,
    Peer,
    PeerStatus,
    Resources,
    Vote,
    VoteStatus,
)
from ecodefer.mesh.peers import PeerRegistry
from ecodefer.mesh.sla import EnergySLA, sla_for
from ecodefer.mesh.voting import ImportanceVoting, tally

__all__ = [
    "Ballot",
    "CarbonLedger",
    "CarbonRecord",
    "Delegation",
    "DelegationManager",
    "DelegationStatus",
    "EnergyProfile",
    "EnergySLA",
    "GridSignal",
    "GridSignalProvider",
    "ImportanceVoting",
    "Importance",
    "MeshEventLog",
    "Peer",
    "PeerRegistry",
    "PeerStatus",
    "Resources",
    "Vote",
    "VoteStatus",
    "sla_for",
    "static_grid",
    "tally",
]
