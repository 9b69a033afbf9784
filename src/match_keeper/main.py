import asyncio
import json
import logging
import time
import uuid

import typer

from match_keeper.config import LedgerConfig, SettlementPolicy
from match_keeper.executor import SettlementExecutor
from match_keeper.ledger import LedgerClient, Web3LedgerClient
from match_keeper.models import Match, MatchCreated
from match_keeper.registry import MatchRegistry


app = typer.Typer(help="Operator tools for the match keeper ledger.")
logger = logging.getLogger(__name__)


def _setup(level: str):
    from match_keeper.logging_config import setup_logging

    setup_logging(level=level)


@app.command()
def inspect(
    address: str = typer.Argument(..., help="Match (PlayGround) contract address."),
    log_level: str = typer.Option("WARNING", "--log-level", "-l"),
):
    """
    Print the ledger's current round state for a match.
    """
    _setup(log_level)
    asyncio.run(inspect_async(Web3LedgerClient(LedgerConfig.from_env()), address))


async def inspect_async(ledger: LedgerClient, address: str):
    try:
        state = await ledger.get_match_round_state(address)
        remaining = state.deadline - time.time()
        typer.echo(json.dumps(state.model_dump(mode="json"), indent=2))
        typer.echo(f"Deadline in {remaining:.0f}s" if remaining > 0 else f"Deadline passed {-remaining:.0f}s ago")
    finally:
        await ledger.close()


@app.command("open-matches")
def open_matches(
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
):
    """
    List matches announced on the ledger that are not over yet.
    """
    _setup(log_level)
    asyncio.run(open_matches_async(Web3LedgerClient(LedgerConfig.from_env())))


async def open_matches_async(ledger: LedgerClient):
    try:
        matches = await ledger.list_open_matches()
        for created in matches:
            typer.echo(f"{created.match_address}  {created.participant1} vs {created.participant2}  (block {created.block_number})")
        typer.echo(f"{len(matches)} open matches")
    finally:
        await ledger.close()


@app.command()
def settle(
    address: str = typer.Argument(..., help="Match (PlayGround) contract address."),
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
):
    """
    Settle the current round of one match now, using the normal retry policy.

    Intended for manual intervention after a fatal settlement error was fixed.
    """
    _setup(log_level)
    outcome = asyncio.run(settle_async(Web3LedgerClient(LedgerConfig.from_env()), address, SettlementPolicy.from_env()))
    if not outcome.result.is_success:
        raise typer.Exit(code=1)


async def settle_async(ledger: LedgerClient, address: str, policy: SettlementPolicy):
    registry = MatchRegistry()
    executor = SettlementExecutor(ledger, registry, policy)
    attempt_id = uuid.uuid4().hex
    try:
        now = time.time()
        match = Match.from_discovery(
            MatchCreated(participant1="", participant2="", match_address=address),
            now=now,
        )
        match.begin_settlement(attempt_id)
        registry.insert(match)

        outcome = await executor.attempt_settlement(address, attempt_id)
        typer.echo(f"{address}: {outcome.result.value} after {outcome.attempts} attempt(s) in {outcome.latency_ms:.0f}ms")
        if outcome.tx_id:
            typer.echo(f"Transaction: {outcome.tx_id}")
        if outcome.error:
            typer.echo(f"Error: {outcome.error}")
        return outcome
    finally:
        await ledger.close()


if __name__ == "__main__":
    app()
