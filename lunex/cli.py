"""
Lunex CLI - Main Entry Point

Usage:
    lunex deploy testnet env:DEPLOYER_KEY --dry-run
    lunex verify testnet
    lunex list-token listing.json
    lunex check-proposal 3
    lunex vote 3 --for
    lunex execute-proposal 3
    lunex watch-proposal 3 --interval 60
    lunex add-liquidity 0xToken 1000000 500000

Thin wrapper over the orchestrator, verifier and governance workflow.
"""

import time
import json as json_lib
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

import schedule
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from lunex import __version__
from lunex.chain import Web3Gateway
from lunex.config import DeploymentConfig, NetworkProfile, Settings, get_network, setup_logging
from lunex.contracts import catalogue
from lunex.contracts.interface import ContractInterface, load_interfaces
from lunex.errors import DeploymentAborted, LunexError
from lunex.governance import ProposalReport, ProposalStatus, ProposalWorkflow
from lunex.listing import ListingConfig, TokenLister
from lunex.notify import Alerter
from lunex.orchestrator import DeploymentOrchestrator
from lunex.plan import catalogue_plan
from lunex.record import DeploymentRecord
from lunex.signer import SignerContext, resolve_signer
from lunex.tracker import TransactionTracker
from lunex.verifier import DeploymentVerifier, ExpectedConfig, VerificationReport

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="lunex",
    help="Deploy, verify and govern the Lunex DEX contracts",
    no_args_is_help=True,
)

console = Console()


@dataclass
class Session:
    settings: Settings
    profile: NetworkProfile
    chain: Web3Gateway
    tracker: TransactionTracker
    interfaces: Dict[str, ContractInterface]
    signer: Optional[SignerContext] = None


def _settings() -> Settings:
    settings = Settings.from_env()
    setup_logging(settings.log_level, settings.log_file)
    return settings


@asynccontextmanager
async def _session(settings: Settings, network: str, signer: Optional[str], contracts: List[str],
                   needs_signer: bool = True):
    profile = get_network(network)
    interfaces = load_interfaces(settings.artifacts_dir, {name: catalogue.ARTIFACTS[name] for name in contracts})
    chain = await Web3Gateway.connect(profile)
    try:
        chain_id = await chain.chain_id()
        yield Session(
            settings=settings,
            profile=profile,
            chain=chain,
            tracker=TransactionTracker(chain, settings.poll_interval, settings.tx_timeout),
            interfaces=interfaces,
            signer=resolve_signer(signer, chain_id) if needs_signer else None,
        )
    finally:
        await chain.close()


def _fail(message: str, alerter: Optional[Alerter] = None, details: Optional[Dict[str, str]] = None):
    console.print(f"[red]{message}[/red]")
    if alerter is not None:
        alerter.send(message, details)
    raise typer.Exit(1)


def _record_path(settings: Settings, network: str, record: Optional[str]) -> str:
    return record or settings.record_path(network)


def _tx_link(profile: NetworkProfile, tx_hash: str) -> str:
    return profile.tx_url(tx_hash) or tx_hash


def _print_report(report: VerificationReport):
    table = Table(title=f"Verification - {report.network}")
    table.add_column("Check", style="magenta")
    table.add_column("Contract", style="cyan")
    table.add_column("Key")
    table.add_column("Expected")
    table.add_column("Actual")
    table.add_column("Result")

    for row in report.to_frame().itertuples(index=False):
        if row.passed:
            result = "[green]ok[/green]"
        elif row.severity == "warning":
            result = "[yellow]warning[/yellow]"
        else:
            result = f"[red]{row.detail or 'mismatch'}[/red]"
        table.add_row(row.check, row.contract, str(row.key), row.expected, row.actual, result)
    console.print(table)

    for warning in report.warnings:
        console.print(f"[yellow]{warning}[/yellow]")
    if report.overall_pass:
        console.print("[bold green]All contracts verified successfully[/bold green]")
    else:
        console.print(f"[bold red]Verification failed ({len(report.mismatches)} mismatches)[/bold red]")


def _print_proposal(report: ProposalReport):
    proposal = report.proposal
    colour = {
        ProposalStatus.APPROVED: "green",
        ProposalStatus.REJECTED: "red",
        ProposalStatus.EXECUTED: "blue",
    }.get(report.status, "yellow")
    content = f"""[bold]Proposal:[/bold] {proposal.id}
[bold]Title:[/bold] {proposal.title}
[bold]Target:[/bold] {proposal.target_address}
[bold]Proposer:[/bold] {proposal.proposer}
[bold]Status:[/bold] [{colour}]{report.status.value}[/{colour}]
[bold]Votes for:[/bold] {proposal.votes_for}
[bold]Votes against:[/bold] {proposal.votes_against}
[bold]Quorum reached:[/bold] {report.quorum_reached}
[bold]Voting deadline:[/bold] {datetime.fromtimestamp(proposal.voting_deadline, tz=timezone.utc).isoformat()}
[bold]Time remaining:[/bold] {report.seconds_remaining}s"""
    console.print(Panel(content, title="Proposal", border_style="blue"))


@app.callback()
def main_callback():
    """Lunex - deployment and governance tooling for the Lunex DEX."""
    pass


@app.command()
def version():
    """Show version information."""
    console.print(f"[bold]Lunex deployer[/bold] v{__version__}")


# =============================================================================
# Deploy Command
# =============================================================================

@app.command()
def deploy(
    network: str = typer.Argument(..., help="Network profile: local, testnet or mainnet"),
    signer: str = typer.Argument(..., help="Signer reference: env:VAR, key file path or raw key"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Estimate every instantiation, submit nothing"),
    skip_verification: bool = typer.Option(False, "--skip-verification", help="Do not verify after deploying"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Deployment config JSON"),
    record: Optional[str] = typer.Option(None, "--record", "-r", help="Deployment record path"),
    discard_pending: bool = typer.Option(
        False, "--discard-pending", help="Redeploy pending entries whose transaction cannot be found",
    ),
):
    """Deploy the core contracts in dependency order, then wire and verify them."""
    settings = _settings()
    alerter = Alerter.from_settings(settings)
    try:
        deployment = DeploymentConfig.load(config) if config else DeploymentConfig(network=network)
        if deployment.network != network:
            _fail(f"Config {config} targets {deployment.network}, not {network}")
        plan = catalogue_plan(deployment.contracts)
    except LunexError as e:
        _fail(str(e))

    if network == "mainnet" and not dry_run:
        console.print("[bold red]You are deploying to MAINNET.[/bold red]")
        if typer.prompt("Type CONFIRM to continue") != "CONFIRM":
            console.print("Deployment cancelled")
            raise typer.Exit(1)

    path = _record_path(settings, network, record)

    async def run():
        async with _session(settings, network, signer, plan.names) as session:
            orchestrator = DeploymentOrchestrator(
                session.chain,
                session.tracker,
                session.interfaces,
                session.signer,
                treasury=deployment.treasury,
                min_balance=settings.min_deployer_balance,
                discard_unseen_pending=discard_pending,
            )
            existing = DeploymentRecord.load_or_create(path, network, session.signer.address)

            if dry_run:
                estimates = await orchestrator.dry_run(plan, existing)
                table = Table(title=f"Dry run - {network}")
                table.add_column("Contract", style="cyan")
                table.add_column("Gas", justify="right")
                table.add_column("Gas limit", justify="right")
                table.add_column("Code size", justify="right")
                table.add_column("Result")
                for estimate in estimates:
                    if estimate.skipped:
                        result = "[dim]already deployed[/dim]"
                    elif estimate.within_budget:
                        result = "[green]ok[/green]" + (" (placeholder args)" if estimate.placeholder_args else "")
                    else:
                        result = f"[red]{estimate.error or 'over budget'}[/red]"
                    table.add_row(
                        estimate.contract, str(estimate.gas or "-"), str(estimate.gas_limit),
                        f"{estimate.code_size}/{estimate.code_size_limit}", result,
                    )
                console.print(table)
                return all(e.within_budget for e in estimates)

            deployed = await orchestrator.deploy(plan, existing, initial_tokens=deployment.initial_tokens)
            table = Table(title=f"Deployed contracts - {network}")
            table.add_column("Contract", style="cyan")
            table.add_column("Address", style="green")
            table.add_column("Block", justify="right")
            table.add_column("Transaction")
            for entry in deployed:
                table.add_row(
                    entry.name, entry.address or "pending", str(entry.block_number or "-"),
                    _tx_link(session.profile, entry.transaction_id),
                )
            console.print(table)
            console.print(f"Record saved to {deployed.path}")

            if skip_verification:
                return True
            verifier = DeploymentVerifier(session.chain, session.interfaces)
            expected = ExpectedConfig.defaults(session.signer.address, orchestrator.treasury)
            report = await verifier.verify_all(deployed, expected)
            _print_report(report)
            if not report.overall_pass:
                alerter.send(f"Verification failed after deploying to {network}",
                             {"mismatches": str(len(report.mismatches))})
            return report.overall_pass

    try:
        ok = asyncio.run(run())
    except DeploymentAborted as e:
        _fail(f"Deployment aborted: {e}", alerter, {"network": network, "phase": e.phase, "contract": e.contract})
    except LunexError as e:
        _fail(str(e))
    if not ok:
        raise typer.Exit(1)


# =============================================================================
# Verify Command
# =============================================================================

@app.command()
def verify(
    network: str = typer.Argument(..., help="Network profile"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Verification config JSON"),
    record: Optional[str] = typer.Option(None, "--record", "-r", help="Deployment record path"),
    csv: Optional[str] = typer.Option(None, "--csv", help="Also write the report as CSV"),
    json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Verify a deployment against its expected configuration."""
    settings = _settings()
    alerter = Alerter.from_settings(settings)

    async def run() -> VerificationReport:
        path = _record_path(settings, network, record)
        deployment = DeploymentRecord.load(path)
        if config:
            expected = ExpectedConfig.load(config)
        else:
            expected = ExpectedConfig.defaults(deployment.deployed_by, deployment.treasury)
        async with _session(settings, network, None, catalogue.CORE_CONTRACTS, needs_signer=False) as session:
            verifier = DeploymentVerifier(session.chain, session.interfaces)
            return await verifier.verify_all(deployment, expected)

    try:
        report = asyncio.run(run())
    except LunexError as e:
        _fail(str(e))

    if json:
        print(json_lib.dumps(report.to_dict(), indent=2, default=str))
    else:
        _print_report(report)
    if csv:
        report.to_frame().to_csv(csv, index=False)
        console.print(f"Report written to {csv}")
    if not report.overall_pass:
        _fail(f"Verification failed on {network}", alerter, {"mismatches": str(len(report.mismatches))})


# =============================================================================
# Governance Commands
# =============================================================================

def _workflow(session: Session, network: str, record: Optional[str]) -> ProposalWorkflow:
    deployment = DeploymentRecord.load(_record_path(session.settings, network, record))
    return ProposalWorkflow(
        session.chain,
        session.tracker,
        session.interfaces[catalogue.STAKING],
        deployment.address_of(catalogue.STAKING),
    )


def _network_option():
    return typer.Option(None, "--network", "-n", help="Network profile (default: LUNEX_NETWORK)")


@app.command("list-token")
def list_token(
    config: str = typer.Argument(..., help="Listing config JSON"),
    signer: Optional[str] = typer.Option(None, "--signer", "-s", help="Proposer signer reference"),
    report_dir: str = typer.Option(".", "--report-dir", help="Where to write the listing report"),
):
    """Validate a token and open its listing proposal."""
    settings = _settings()
    try:
        listing = ListingConfig.load(config)
    except LunexError as e:
        _fail(str(e))

    async def run():
        contracts = [catalogue.STAKING, catalogue.ROUTER, catalogue.TOKEN]
        proposer = signer or listing.signer or settings.signer
        async with _session(settings, listing.network, proposer, contracts) as session:
            workflow = ProposalWorkflow(
                session.chain, session.tracker, session.interfaces[catalogue.STAKING], listing.staking_contract,
            )
            lister = TokenLister(
                session.chain, session.tracker, workflow,
                session.interfaces[catalogue.TOKEN], session.interfaces[catalogue.ROUTER],
                listing.router_contract, report_dir,
            )
            return await lister.list_token(session.signer, listing)

    try:
        result = asyncio.run(run())
    except LunexError as e:
        _fail(str(e))

    console.print(f"[green]Listing proposal {result.proposal.id} created[/green]")
    console.print(f"Report saved to {result.report_path}")
    console.print(f"Check it with: lunex check-proposal {result.proposal.id}")


@app.command("check-proposal")
def check_proposal(
    proposal_id: int = typer.Argument(..., help="Proposal id"),
    network: Optional[str] = _network_option(),
    record: Optional[str] = typer.Option(None, "--record", "-r", help="Deployment record path"),
):
    """Show a proposal's tally and status."""
    settings = _settings()
    network = network or settings.network

    async def run() -> ProposalReport:
        async with _session(settings, network, None, [catalogue.STAKING], needs_signer=False) as session:
            workflow = _workflow(session, network, record)
            return await workflow.status(proposal_id)

    try:
        _print_proposal(asyncio.run(run()))
    except LunexError as e:
        _fail(str(e))


@app.command()
def vote(
    proposal_id: int = typer.Argument(..., help="Proposal id"),
    in_favor: bool = typer.Option(..., "--for/--against", help="Vote for or against"),
    signer: Optional[str] = typer.Option(None, "--signer", "-s", help="Voter signer reference"),
    network: Optional[str] = _network_option(),
    record: Optional[str] = typer.Option(None, "--record", "-r", help="Deployment record path"),
):
    """Vote on an open proposal."""
    settings = _settings()
    network = network or settings.network

    async def run():
        async with _session(settings, network, signer or settings.signer, [catalogue.STAKING]) as session:
            workflow = _workflow(session, network, record)
            return await workflow.vote(session.signer, proposal_id, in_favor)

    try:
        proposal = asyncio.run(run())
    except LunexError as e:
        _fail(str(e))
    console.print(
        f"[green]Vote recorded.[/green] Tally: {proposal.votes_for} for / {proposal.votes_against} against"
    )


@app.command("execute-proposal")
def execute_proposal(
    proposal_id: int = typer.Argument(..., help="Proposal id"),
    signer: Optional[str] = typer.Option(None, "--signer", "-s", help="Executor signer reference"),
    network: Optional[str] = _network_option(),
    record: Optional[str] = typer.Option(None, "--record", "-r", help="Deployment record path"),
):
    """Execute a proposal whose voting period has ended."""
    settings = _settings()
    network = network or settings.network

    async def run():
        async with _session(settings, network, signer or settings.signer, [catalogue.STAKING]) as session:
            workflow = _workflow(session, network, record)
            return await workflow.execute_proposal(session.signer, proposal_id)

    try:
        result = asyncio.run(run())
    except LunexError as e:
        _fail(str(e))
    if result.approved:
        console.print(f"[green]Proposal {proposal_id} approved; token listed[/green]")
    else:
        console.print(f"[yellow]Proposal {proposal_id} rejected[/yellow]")
    console.print(f"Transaction: {_tx_link(get_network(network), result.outcome.tx_hash)}")


@app.command("watch-proposal")
def watch_proposal(
    proposal_id: int = typer.Argument(..., help="Proposal id"),
    interval: int = typer.Option(60, "--interval", "-i", help="Seconds between checks"),
    network: Optional[str] = _network_option(),
    record: Optional[str] = typer.Option(None, "--record", "-r", help="Deployment record path"),
):
    """Poll a proposal until its voting period ends."""
    settings = _settings()
    network = network or settings.network
    state = {"done": False}

    async def check() -> ProposalReport:
        async with _session(settings, network, None, [catalogue.STAKING], needs_signer=False) as session:
            workflow = _workflow(session, network, record)
            return await workflow.status(proposal_id)

    def job():
        try:
            report = asyncio.run(check())
        except LunexError as e:
            logger.error(f"Proposal check failed: {e}")
            return
        _print_proposal(report)
        if report.status not in (ProposalStatus.CREATED, ProposalStatus.VOTING):
            state["done"] = True

    schedule.every(interval).seconds.do(job)
    job()
    try:
        while not state["done"]:
            schedule.run_pending()
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("Stopped watching")
    finally:
        schedule.clear()


# =============================================================================
# Liquidity Command
# =============================================================================

@app.command("add-liquidity")
def add_liquidity(
    token: str = typer.Argument(..., help="Token address"),
    amount: int = typer.Argument(..., help="Token amount, in base units"),
    quote: int = typer.Argument(..., help="Native amount, in wei"),
    signer: Optional[str] = typer.Option(None, "--signer", "-s", help="Liquidity provider signer reference"),
    network: Optional[str] = _network_option(),
    record: Optional[str] = typer.Option(None, "--record", "-r", help="Deployment record path"),
):
    """Add initial token/native liquidity through the router."""
    settings = _settings()
    network = network or settings.network

    async def run():
        contracts = [catalogue.STAKING, catalogue.ROUTER, catalogue.TOKEN]
        async with _session(settings, network, signer or settings.signer, contracts) as session:
            deployment = DeploymentRecord.load(_record_path(settings, network, record))
            workflow = _workflow(session, network, record)
            lister = TokenLister(
                session.chain, session.tracker, workflow,
                session.interfaces[catalogue.TOKEN], session.interfaces[catalogue.ROUTER],
                deployment.address_of(catalogue.ROUTER),
            )
            return await lister.add_liquidity(session.signer, token, amount, quote)

    try:
        outcome = asyncio.run(run())
    except LunexError as e:
        _fail(str(e))
    console.print(f"[green]Liquidity added[/green] in block {outcome.block_number}")
    console.print(f"Transaction: {_tx_link(get_network(network), outcome.tx_hash)}")


if __name__ == "__main__":
    app()
