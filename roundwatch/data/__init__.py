from .contract import PREDICTION_ABI, PredictionContract, build_w3, contract_factory, parse_round
from .round_store import RoundStore, slot_prefix
from .rpc_pool import EndpointPool, RetryPolicy, RoundReader, RpcClient, is_permanent
from .snapshot_store import StatusStore
from .csv_export import export_rounds_csv

__all__ = [
    "PREDICTION_ABI",
    "EndpointPool",
    "PredictionContract",
    "RetryPolicy",
    "RoundReader",
    "RoundStore",
    "RpcClient",
    "StatusStore",
    "build_w3",
    "contract_factory",
    "export_rounds_csv",
    "is_permanent",
    "parse_round",
    "slot_prefix",
]
