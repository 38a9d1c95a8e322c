from cliper.retrieval.brain import consult_brain
from cliper.retrieval.query import decompose_query, resolve_folder_scopes
from cliper.retrieval.ranker import candidate_budget, rank_candidates
from cliper.retrieval.time_parser import parse_due_time

__all__ = [
    "consult_brain",
    "decompose_query",
    "resolve_folder_scopes",
    "candidate_budget",
    "rank_candidates",
    "parse_due_time",
]
