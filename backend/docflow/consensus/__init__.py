from docflow.consensus.engine import ConsensusEngine, ConsensusOutcome, ConsensusRun
from docflow.consensus.voting import canonical_key, compose_field_level_winner

__all__ = [
    "ConsensusEngine",
    "ConsensusOutcome",
    "ConsensusRun",
    "canonical_key",
    "compose_field_level_winner",
]
