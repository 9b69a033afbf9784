import asyncio
import logging
from collections import OrderedDict
from typing import AsyncIterator, Dict, List, Optional, Sequence

import aiohttp
from eth_account import Account
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from match_keeper.config import LedgerConfig
from match_keeper.exceptions import (
    AlreadySettledError,
    FatalLedgerError,
    LedgerError,
    TransientLedgerError,
)
from match_keeper.ledger.abis import GAME_CONSOLE_ABI, GAME_STATE_ACTIVE, PLAYGROUND_ABI
from match_keeper.ledger.ledger_client import LedgerClient
from match_keeper.models import MatchCreated, RoundState, SettlementReceipt

# Reverts that mean "try again later" rather than "never".
TRANSIENT_REVERT_MARKERS = ("not yet", "not expired", "too early", "time not")
FATAL_REVERT_MARKERS = ("owner", "unauthori", "not allowed", "forbidden")
TRANSIENT_RPC_MARKERS = (
    "nonce too low",
    "nonce too high",
    "replacement transaction underpriced",
    "already known",
    "timeout",
    "timed out",
    "rate limit",
    "header not found",
    "connection",
)
FATAL_RPC_MARKERS = ("insufficient funds", "invalid sender", "unauthorized")

# Remembered broadcasts per attempt id
MAX_TRACKED_ATTEMPTS = 1024

TRANSPORT_ERRORS = (Web3Exception, ValueError, OSError, aiohttp.ClientError, asyncio.TimeoutError)


def classify_ledger_error(error: Exception, already_settled_markers: Sequence[str] = ()) -> LedgerError:
    """Map a web3/transport exception onto the keeper's ledger error taxonomy."""
    if isinstance(error, LedgerError):
        return error

    message = str(error)
    lowered = message.lower()

    if isinstance(error, ContractLogicError):
        reason = (getattr(error, "message", None) or message).lower()
        if any(marker in reason for marker in already_settled_markers):
            return AlreadySettledError(f"Round already settled: {message}")
        if any(marker in reason for marker in TRANSIENT_REVERT_MARKERS):
            return TransientLedgerError(f"Contract not ready yet: {message}")
        if any(marker in reason for marker in FATAL_REVERT_MARKERS):
            return FatalLedgerError(f"Not authorized to settle: {message}")
        return FatalLedgerError(f"Contract rejected settlement: {message}")

    if isinstance(error, (TimeExhausted, asyncio.TimeoutError, aiohttp.ClientError, ConnectionError)):
        return TransientLedgerError(f"Ledger unreachable: {message or type(error).__name__}")

    if any(marker in lowered for marker in FATAL_RPC_MARKERS):
        return FatalLedgerError(f"Ledger refused request: {message}")
    if any(marker in lowered for marker in TRANSIENT_RPC_MARKERS):
        return TransientLedgerError(f"Ledger busy: {message}")

    # Unknown RPC failures are retried
    return TransientLedgerError(f"Ledger request failed: {message or type(error).__name__}")


class Web3LedgerClient(LedgerClient):
    """
    Ledger client for the GameConsole / PlayGround contracts on an EVM chain.
    All methods are asynchronous.
    """

    def __init__(self, config: LedgerConfig, w3: Optional[AsyncWeb3] = None):
        self.config = config
        self.w3 = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(config.rpc_url))
        self.account = Account.from_key(config.owner_private_key) if config.owner_private_key else None
        self.logger = logging.getLogger(__name__)

        self._console = None
        if config.console_address:
            self._console = self.w3.eth.contract(
                address=AsyncWeb3.to_checksum_address(config.console_address),
                abi=GAME_CONSOLE_ABI,
            )
        # Broadcast + nonce allocation share the owner account
        self._send_lock = asyncio.Lock()
        self._attempt_tx: "OrderedDict[str, bytes]" = OrderedDict()
        self._scanned_through: Optional[int] = None

        if self.account:
            self.logger.info(f"Settlement account: {self.account.address}")
        else:
            self.logger.warning("No owner key configured; settlement calls will fail")

    def _playground(self, address: str):
        return self.w3.eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=PLAYGROUND_ABI)

    def _require_console(self):
        if self._console is None:
            raise FatalLedgerError("KEEPER_CONSOLE_ADDRESS is not configured")
        return self._console

    async def _block_number(self) -> int:
        try:
            return await self.w3.eth.block_number
        except TRANSPORT_ERRORS as e:
            raise classify_ledger_error(e) from e

    async def _fetch_match_found(self, from_block: int, to_block: int) -> List[MatchCreated]:
        console = self._require_console()
        try:
            logs = await console.events.MatchFound.get_logs(from_block=from_block, to_block=to_block)
        except TRANSPORT_ERRORS as e:
            self.logger.error(f"Failed to fetch MatchFound logs {from_block}-{to_block}: {e}")
            raise classify_ledger_error(e) from e

        matches = [
            MatchCreated(
                participant1=log["args"]["player1"],
                participant2=log["args"]["player2"],
                match_address=log["args"]["gameAddress"],
                block_number=log["blockNumber"],
            )
            for log in logs
        ]
        if matches:
            self.logger.debug(f"Fetched {len(matches)} MatchFound logs in blocks {from_block}-{to_block}")
        return matches

    async def subscribe_match_created(self) -> AsyncIterator[MatchCreated]:
        """Poll MatchFound logs block range by block range, resuming where the last scan stopped."""
        self._require_console()
        if self._scanned_through is None:
            self._scanned_through = await self._block_number()
        span = self.config.log_block_span

        while True:
            latest = await self._block_number()
            while self._scanned_through < latest:
                from_block = self._scanned_through + 1
                to_block = min(latest, from_block + span - 1)
                for created in await self._fetch_match_found(from_block, to_block):
                    yield created
                self._scanned_through = to_block
            await asyncio.sleep(self.config.log_poll_interval)

    async def list_open_matches(self) -> List[MatchCreated]:
        """Scan MatchFound logs from start_block and keep matches whose gameState is still active."""
        latest = await self._block_number()
        span = self.config.log_block_span
        found: Dict[str, MatchCreated] = {}

        from_block = self.config.start_block
        while from_block <= latest:
            to_block = min(latest, from_block + span - 1)
            for created in await self._fetch_match_found(from_block, to_block):
                found[created.match_address] = created
            from_block = to_block + 1
        self._scanned_through = latest

        candidates = list(found.values())
        states = await asyncio.gather(
            *[self._read_game_state(c.match_address) for c in candidates],
            return_exceptions=True,
        )
        open_matches = []
        for created, state in zip(candidates, states):
            if isinstance(state, Exception):
                # Keep it; the scheduler will read it again and conclude it if needed
                self.logger.warning(f"Could not read gameState for {created.match_address}: {state}")
                open_matches.append(created)
            elif state == GAME_STATE_ACTIVE:
                open_matches.append(created)

        self.logger.info(f"Found {len(open_matches)} open matches out of {len(candidates)} announced")
        return open_matches

    async def _read_game_state(self, address: str) -> int:
        try:
            return await self._playground(address).functions.gameState().call()
        except TRANSPORT_ERRORS as e:
            raise classify_ledger_error(e) from e

    async def get_match_round_state(self, address: str) -> RoundState:
        functions = self._playground(address).functions
        try:
            game_state, start, duration, p1_moved, p2_moved, game_count = await asyncio.gather(
                functions.gameState().call(),
                functions.moveSelectionStartTime().call(),
                functions.moveSelectionDuration().call(),
                functions.player1Moved().call(),
                functions.player2Moved().call(),
                functions.gameCount().call(),
            )
        except TRANSPORT_ERRORS as e:
            self.logger.debug(f"Round state read failed for {address}: {e}")
            raise classify_ledger_error(e) from e

        return RoundState(
            is_terminal=game_state != GAME_STATE_ACTIVE,
            deadline=float(start + duration),
            participant1_acted=bool(p1_moved),
            participant2_acted=bool(p2_moved),
            round_index=int(game_count),
        )

    async def submit_settlement(self, address: str, attempt_id: str) -> SettlementReceipt:
        if self.account is None:
            raise FatalLedgerError("KEEPER_OWNER_PRIVATE_KEY is not configured")

        try:
            tx_hash = self._attempt_tx.get(attempt_id)
            if tx_hash is None:
                tx_hash = await self._broadcast_settlement(address)
                self._remember(attempt_id, tx_hash)
            else:
                self.logger.info(f"Retrying attempt {attempt_id}: waiting on {tx_hash.hex()} for {address}")

            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.config.receipt_timeout
            )
        except TRANSPORT_ERRORS as e:
            error = classify_ledger_error(e, self.config.already_settled_markers)
            if not isinstance(error, TransientLedgerError):
                self._attempt_tx.pop(attempt_id, None)
            raise error from e

        self._attempt_tx.pop(attempt_id, None)
        tx_id = tx_hash.hex()
        if receipt["status"] != 1:
            # Mined but reverted; replay as a call to learn why
            raise await self._explain_revert(address, tx_id)

        self.logger.info(f"Settlement {tx_id} for {address} confirmed in block {receipt['blockNumber']}")
        return SettlementReceipt(tx_id=tx_id, confirmed=True)

    async def _broadcast_settlement(self, address: str) -> bytes:
        calculate = self._playground(address).functions.calculateResult()
        async with self._send_lock:
            nonce = await self.w3.eth.get_transaction_count(self.account.address, "pending")
            # Gas estimation runs the call, so reverts surface here as ContractLogicError
            tx = await calculate.build_transaction({"from": self.account.address, "nonce": nonce})
            signed = self.account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        self.logger.info(f"Settlement tx {tx_hash.hex()} sent for {address} (nonce {nonce})")
        return tx_hash

    async def _explain_revert(self, address: str, tx_id: str) -> LedgerError:
        calculate = self._playground(address).functions.calculateResult()
        try:
            await calculate.call({"from": self.account.address})
        except TRANSPORT_ERRORS as e:
            return classify_ledger_error(e, self.config.already_settled_markers)
        return TransientLedgerError(f"Settlement {tx_id} for {address} reverted; state has since changed")

    def _remember(self, attempt_id: str, tx_hash: bytes) -> None:
        self._attempt_tx[attempt_id] = tx_hash
        while len(self._attempt_tx) > MAX_TRACKED_ATTEMPTS:
            self._attempt_tx.popitem(last=False)

    async def close(self) -> None:
        await self.w3.provider.disconnect()
        self.logger.debug("Web3 provider disconnected")
