"""
Portfolio analysis pass.

Walks every account in the configured portfolios one at a time: ingests new
CRM cases, classifies them, rescores the account and raises alerts. Each
account ends in exactly one outcome in the run summary; no account failure
stops the run, only the run cap does.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Iterator, List, Optional, Tuple
import argparse
import json
import logging

from friction_pipeline.agents.llm_agent import FrictionClassifier
from friction_pipeline.config.logging_config import configure_logging
from friction_pipeline.config.settings import PipelineConfig, Settings
from friction_pipeline.data_access.credentials import CredentialProvider, PlainTokenVault, TokenVault
from friction_pipeline.data_access.postgres_client import PostgresClient
from friction_pipeline.data_access.salesforce_client import SalesforceClient
from friction_pipeline.errors import (
    CaseStoreError,
    CredentialsError,
    PersistenceError,
    TokenExpiredError,
    TokenRefreshError,
)
from friction_pipeline.models.schemas import (
    Account,
    AccountOutcome,
    AccountSnapshot,
    AccountStatus,
    CaseRecord,
    FrictionCard,
    IntegrationCredentials,
    OutcomeStatus,
    Portfolio,
    RunSummary,
)
from friction_pipeline.pipelines.ingest import RecordDeduplicator, build_raw_inputs
from friction_pipeline.scoring.ofi import build_snapshot, compute_ofi
from friction_pipeline.scoring.trends import compute_trend, evaluate_alerts, purge_expired_alerts


logger = logging.getLogger(__name__)

INACTIVE_STATUSES = (AccountStatus.CANCELLED.value, AccountStatus.CHURNED.value)


class Decision(str, Enum):
    SKIP = "skip"
    STOP = "stop"


@dataclass
class AccountContext:
    """What the skip rules look at before any external call is made."""
    account_id: str
    account: Optional[Account]
    today_snapshot: Optional[AccountSnapshot]
    processed_count: int
    run_cap: int


@dataclass(frozen=True)
class SkipRule:
    name: str
    applies: Callable[[AccountContext], bool]
    decision: Decision
    reason: Callable[[AccountContext], str]


# Evaluated in order, first match wins
SKIP_RULES: Tuple[SkipRule, ...] = (
    SkipRule(
        "account_not_found",
        lambda ctx: ctx.account is None,
        Decision.SKIP,
        lambda ctx: "Account not found",
    ),
    SkipRule(
        "inactive_account",
        lambda ctx: ctx.account.status in INACTIVE_STATUSES,
        Decision.SKIP,
        lambda ctx: f"Account is {ctx.account.status}",
    ),
    SkipRule(
        "snapshot_exists_today",
        lambda ctx: ctx.today_snapshot is not None,
        Decision.SKIP,
        lambda ctx: "Already analyzed today",
    ),
    SkipRule(
        "run_cap_reached",
        lambda ctx: ctx.processed_count >= ctx.run_cap,
        Decision.STOP,
        lambda ctx: f"Run cap of {ctx.run_cap} accounts reached",
    ),
)


def evaluate_skip_rules(ctx: AccountContext, rules: Tuple[SkipRule, ...] = SKIP_RULES) -> Optional[SkipRule]:
    """Return the first rule matching the account, or None to process it."""
    for rule in rules:
        if rule.applies(ctx):
            return rule
    return None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PortfolioAnalysisPipeline:
    """Incremental friction analysis over portfolio accounts."""

    def __init__(
        self,
        config: Settings,
        pipeline_config: Optional[PipelineConfig] = None,
        vault: Optional[TokenVault] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize the pipeline.

        Args:
            config: Application settings
            pipeline_config: Caps and scoring constants (defaults to config.pipeline)
            vault: Token vault for OAuth token values (defaults to plain storage)
            clock: Returns the current UTC time; snapshot dates derive from it
        """
        self.config = config
        self.pipeline = pipeline_config or config.pipeline
        self.clock = clock
        self.store = PostgresClient(config)
        self.salesforce = SalesforceClient(config)
        self.classifier = FrictionClassifier(config)
        self.credentials = CredentialProvider(self.store, vault or PlainTokenVault())
        self.deduplicator = RecordDeduplicator(self.store)

    def run(self, portfolio_types: Optional[List[str]] = None) -> RunSummary:
        """
        Execute one analysis pass.

        Args:
            portfolio_types: Portfolio types to walk (defaults to the configured ones)

        Returns:
            RunSummary with one outcome per account reached
        """
        now = self.clock()
        today = now.date()
        portfolio_types = portfolio_types or self.pipeline.portfolio_types
        logger.info(f"Starting portfolio analysis for {', '.join(portfolio_types)} (run cap {self.pipeline.run_cap})")

        try:
            self._housekeeping(now)
            self.classifier.use_themes({t.theme_key: t.label for t in self.store.get_themes()})

            portfolios = self.store.get_portfolios(portfolio_types)
            summary = RunSummary()
            for user_id, account_id in self._portfolio_accounts(portfolios):
                summary = self.analyze_account(summary, user_id, account_id, today, now)
                if summary.stopped_at_cap:
                    logger.info(f"Run cap reached after {summary.processed_count} accounts; stopping")
                    break
        finally:
            self.store.close()
            self.salesforce.close()

        logger.info(
            f"Portfolio analysis complete: {summary.count(OutcomeStatus.SUCCESS)} analyzed, "
            f"{summary.count(OutcomeStatus.SKIPPED)} skipped, {summary.count(OutcomeStatus.NO_CASES)} no cases, "
            f"{summary.count(OutcomeStatus.FAILED)} failed, "
            f"{summary.count(OutcomeStatus.SNAPSHOT_ERROR)} snapshot errors"
        )
        return summary

    def _housekeeping(self, now: datetime) -> None:
        try:
            purge_expired_alerts(self.store, now)
        except PersistenceError as e:
            logger.warning(f"Could not purge expired alerts: {e}")

    @staticmethod
    def _portfolio_accounts(portfolios: List[Portfolio]) -> Iterator[Tuple[str, str]]:
        for portfolio in portfolios:
            for account_id in portfolio.account_ids:
                yield portfolio.user_id, account_id

    def analyze_account(
        self,
        summary: RunSummary,
        user_id: str,
        account_id: str,
        today: date,
        now: datetime,
    ) -> RunSummary:
        """Fold one account into the run summary."""
        try:
            ctx = self._load_context(account_id, today, summary.processed_count)
            rule = evaluate_skip_rules(ctx)
            if rule and rule.decision == Decision.STOP:
                return summary.stopped()
            if rule:
                logger.info(f"Skipping account {account_id}: {rule.reason(ctx)}")
                return summary.record(AccountOutcome(
                    account_id=account_id,
                    account=ctx.account.name if ctx.account else None,
                    status=OutcomeStatus.SKIPPED,
                    reason=rule.reason(ctx),
                    ofi=ctx.today_snapshot.ofi_score if rule.name == "snapshot_exists_today" else None,
                ))
            outcome = self.process_account(ctx.account, user_id, today, now)
        except Exception as e:
            logger.exception(f"Failed to analyze account {account_id}")
            outcome = AccountOutcome(
                account_id=account_id,
                status=OutcomeStatus.FAILED,
                error=str(e),
                consumed_budget=True,
            )
        return summary.record(outcome)

    def _load_context(self, account_id: str, today: date, processed_count: int) -> AccountContext:
        account = self.store.get_account(account_id)
        today_snapshot = self.store.get_snapshot_for_date(account_id, today) if account else None
        return AccountContext(
            account_id=account_id,
            account=account,
            today_snapshot=today_snapshot,
            processed_count=processed_count,
            run_cap=self.pipeline.run_cap,
        )

    def process_account(self, account: Account, user_id: str, today: date, now: datetime) -> AccountOutcome:
        """
        Ingest, classify and score one account that passed the skip rules.

        Credential and CRM failures end in a failed outcome that does not
        count against the run cap; a snapshot write failure ends in snapshot_error.
        """
        logger.info(f"Analyzing account {account.name} ({account.id})")
        try:
            credentials = self.credentials.get_credentials(user_id)
            cases = self._fetch_cases(credentials, account)
        except (CredentialsError, TokenRefreshError, CaseStoreError) as e:
            logger.warning(f"Could not fetch cases for account {account.id}: {e}")
            return AccountOutcome(
                account_id=account.id,
                account=account.name,
                status=OutcomeStatus.FAILED,
                error=str(e),
            )

        new_cases: List[CaseRecord] = []
        new_cards: List[FrictionCard] = []
        scoring_cards: List[FrictionCard] = []
        status = OutcomeStatus.NO_CASES

        if not cases:
            logger.info(f"No cases in the last {self.pipeline.lookback_days} days for account {account.id}; writing zero score")
        else:
            window_start = now - timedelta(days=self.pipeline.lookback_days)
            source_type = self.pipeline.source_type
            new_cases = self.deduplicator.filter_new(account.id, cases, source_type)
            inserted = self.store.insert_raw_inputs(
                build_raw_inputs(account, user_id, new_cases, credentials.instance_url, source_type)
            )
            pending = self.store.get_unprocessed_inputs(account.id, source_type, since=window_start)
            existing_cards = self.store.get_friction_cards(account.id, since=window_start)

            if len(pending) > len(inserted):
                logger.info(f"Retrying {len(pending) - len(inserted)} unprocessed inputs from earlier runs")

            if pending:
                new_cards, submitted, failed = self.classifier.classify_batch(pending)
                self.store.insert_friction_cards(new_cards)
                self.store.mark_inputs_processed(submitted)
                if failed:
                    logger.warning(f"{len(failed)} inputs for account {account.id} left unprocessed")
            elif not existing_cards:
                logger.info(f"No new cases and no friction history for account {account.id}; writing zero score")
            else:
                logger.info(f"No new cases for account {account.id}; rescoring from {len(existing_cards)} existing cards")

            cards_by_input = {card.raw_input_id: card for card in existing_cards}
            for card in new_cards:
                cards_by_input.setdefault(card.raw_input_id, card)
            scoring_cards = list(cards_by_input.values())
            if pending or existing_cards:
                status = OutcomeStatus.SUCCESS

        result = compute_ofi(scoring_cards, len(cases), self.pipeline)
        prior = self.store.get_latest_snapshot(account.id, before=today)
        delta, direction = compute_trend(
            result.ofi_score,
            prior.ofi_score if prior else None,
            self.pipeline.trend_threshold,
        )
        snapshot = build_snapshot(account.id, today, result, delta, direction)

        outcome = AccountOutcome(
            account_id=account.id,
            account=account.name,
            status=status,
            cases=len(cases),
            new_cases=len(new_cases),
            analyzed=len(new_cards),
            ofi=snapshot.ofi_score,
            trend=snapshot.trend_direction,
            consumed_budget=True,
        )

        try:
            snapshot = self.store.insert_snapshot(snapshot)
        except PersistenceError as e:
            logger.error(f"Failed to save snapshot for account {account.id}: {e}")
            return outcome.model_copy(update={"status": OutcomeStatus.SNAPSHOT_ERROR.value, "error": str(e)})

        alerts = evaluate_alerts(account, snapshot, now, self.pipeline)
        if alerts:
            try:
                self.store.insert_alerts(alerts)
            except PersistenceError as e:
                logger.error(f"Failed to save alerts for account {account.id}: {e}")
                alerts = []

        logger.info(
            f"Account {account.name}: OFI {snapshot.ofi_score} ({snapshot.trend_direction}), "
            f"{len(new_cards)} cards created, {len(alerts)} alerts"
        )
        return outcome.model_copy(update={"alerts": len(alerts)})

    def _fetch_cases(self, credentials: IntegrationCredentials, account: Account) -> List[CaseRecord]:
        """Fetch recent cases, refreshing the access token once on a 401."""
        def fetch(access_token: str) -> List[CaseRecord]:
            return self.salesforce.get_recent_cases(
                credentials.instance_url,
                access_token,
                account.salesforce_id,
                days=self.pipeline.lookback_days,
                limit=self.pipeline.record_cap,
            )

        try:
            return fetch(credentials.access_token)
        except TokenExpiredError:
            logger.info(f"Access token expired for integration {credentials.integration_id}; refreshing")
            access_token = self.salesforce.refresh_access_token(credentials.refresh_token)
            credentials = self.credentials.save_access_token(credentials, access_token)
            return fetch(credentials.access_token)


def main():
    """Main entry point for running a portfolio analysis pass with CLI arguments."""
    parser = argparse.ArgumentParser(
        description='Run the incremental friction analysis over portfolio accounts.'
    )
    parser.add_argument(
        '--run-cap',
        type=int,
        help='Maximum number of accounts to analyze in this run'
    )
    parser.add_argument(
        '--portfolio-type',
        action='append',
        help='Portfolio type to analyze (repeatable; defaults to the configured types)'
    )
    parser.add_argument(
        '--log-level',
        default='INFO',
        help='Logging level (default: INFO)'
    )
    parser.add_argument(
        '--init-schema',
        action='store_true',
        help='Create the friction store tables before running'
    )

    args = parser.parse_args()
    if args.run_cap is not None and args.run_cap < 1:
        parser.error("--run-cap must be a positive integer")

    configure_logging(args.log_level)

    # Load configuration
    config = Settings()
    pipeline_config = config.pipeline
    if args.run_cap is not None:
        pipeline_config = pipeline_config.model_copy(update={"run_cap": args.run_cap})

    pipeline = PortfolioAnalysisPipeline(config, pipeline_config=pipeline_config)
    if args.init_schema:
        pipeline.store.initialize_schema()

    try:
        summary = pipeline.run(portfolio_types=args.portfolio_type)
    except Exception as e:
        logger.exception("Portfolio analysis failed")
        print(json.dumps({"success": False, "error": str(e)}, indent=2))
        return 1

    print(json.dumps(summary.to_response(), indent=2, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
