from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

from web3 import Web3
from web3.exceptions import BadFunctionCallOutput
from web3.middleware import ExtraDataToPOAMiddleware

from roundwatch.domain import PermanentRemoteError, RawRound, TransientRemoteError

PREDICTION_ABI = [
    {
        "inputs": [],
        "name": "currentEpoch",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "", "type": "uint256"}],
        "name": "rounds",
        "outputs": [
            {"name": "epoch", "type": "uint256"},
            {"name": "startTimestamp", "type": "uint256"},
            {"name": "lockTimestamp", "type": "uint256"},
            {"name": "closeTimestamp", "type": "uint256"},
            {"name": "lockPrice", "type": "int256"},
            {"name": "closePrice", "type": "int256"},
            {"name": "lockOracleId", "type": "uint256"},
            {"name": "closeOracleId", "type": "uint256"},
            {"name": "totalAmount", "type": "uint256"},
            {"name": "bullAmount", "type": "uint256"},
            {"name": "bearAmount", "type": "uint256"},
            {"name": "rewardBaseCalAmount", "type": "uint256"},
            {"name": "rewardAmount", "type": "uint256"},
            {"name": "oracleCalled", "type": "bool"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
]

ROUND_FIELDS = (
    "epoch",
    "start_ts",
    "lock_ts",
    "close_ts",
    "lock_price",
    "close_price",
    "lock_oracle_id",
    "close_oracle_id",
    "total_amount",
    "bull_amount",
    "bear_amount",
    "reward_base_cal_amount",
    "reward_amount",
    "oracle_called",
)


def parse_round(epoch: int, result: Sequence[Any]) -> RawRound:
    """Validate a raw `rounds()` tuple and convert it to RawRound."""
    if isinstance(result, (str, bytes)) or not isinstance(result, Sequence):
        raise PermanentRemoteError(f"epoch {epoch}: unexpected rounds() result type {type(result).__name__}")
    if len(result) != len(ROUND_FIELDS):
        raise PermanentRemoteError(f"epoch {epoch}: rounds() returned {len(result)} fields, expected {len(ROUND_FIELDS)}")
    values: dict[str, Any] = {}
    for name, raw in zip(ROUND_FIELDS, result):
        if name == "oracle_called":
            values[name] = bool(raw)
            continue
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise PermanentRemoteError(f"epoch {epoch}: field {name} is not an integer ({raw!r})")
        values[name] = int(raw)
    out = RawRound(**values)
    # The contract zero-fills rounds that never started, epoch included.
    if out.started and out.epoch != int(epoch):
        raise PermanentRemoteError(f"epoch {epoch}: contract returned epoch {out.epoch}")
    if out.started and out.lock_ts >= out.close_ts:
        raise PermanentRemoteError(f"epoch {epoch}: lock_ts {out.lock_ts} >= close_ts {out.close_ts}")
    return out


def build_w3(rpc_url: str, timeout: int = 10) -> Web3:
    w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
    w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    return w3


class PredictionContract:
    """Read-only calls against the prediction contract on one endpoint."""

    def __init__(self, w3: Web3, address: str):
        self.w3 = w3
        self.address = Web3.to_checksum_address(address)
        self._contract = w3.eth.contract(address=self.address, abi=PREDICTION_ABI)

    def _call(self, fn, label: str):
        try:
            return fn.call()
        except BadFunctionCallOutput as exc:
            # empty return data: the node is lagging or pruned, another endpoint may answer
            raise TransientRemoteError(f"{label}: undecodable output from {self.w3.provider}") from exc

    def current_epoch(self) -> int:
        return int(self._call(self._contract.functions.currentEpoch(), "currentEpoch"))

    def get_round(self, epoch: int) -> RawRound:
        epoch = int(epoch)
        if epoch < 0:
            raise PermanentRemoteError(f"invalid epoch {epoch}")
        return parse_round(epoch, self._call(self._contract.functions.rounds(epoch), f"rounds({epoch})"))


def contract_factory(address: str, *, timeout: int = 10) -> Callable[[str], PredictionContract]:
    def _build(rpc_url: str) -> PredictionContract:
        return PredictionContract(build_w3(rpc_url, timeout=timeout), address)

    return _build
