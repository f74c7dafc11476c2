"""
Tobby - Recurring Transaction Generation Job

Runs once per day (triggered by an external scheduler through the API or the
`tobby generate` command) and turns recurring rules into real transactions.

For every active rule whose start/end window contains today:
  1. Ask the schedule evaluator whether the rule fires today.
  2. Skip it if the generation log already has an entry for (rule, today).
  3. Insert the transaction, write the log entry and move
     last_generated_date forward.

A failure on one rule is logged and the batch moves on; since nothing was
written for that rule it is retried on the next run. Failing to load the
rules at all aborts the run, as does running past the job's time budget.
"""

import enum
import time
import logging
from dataclasses import dataclass

from . import config
from .engine import DuplicateGenerationError, StoreError
from .schedule import should_generate_today

logger = logging.getLogger(__name__)


class RuleOutcome(enum.Enum):
    GENERATED = 'generated'
    NOT_DUE = 'not_due'
    ALREADY_GENERATED = 'already_generated'
    FAILED = 'failed'


class RuleFetchError(Exception):
    """Eligible rules could not be loaded; nothing was processed."""


class JobTimeoutError(Exception):
    """The run exceeded its time budget. summary holds the partial counts."""

    def __init__(self, summary):
        super().__init__(
            f"Generation for {summary.date} timed out after "
            f"{summary.generated + summary.skipped + summary.failed} of {summary.processed} rules"
        )
        self.summary = summary


@dataclass
class GenerationSummary:
    date: str
    processed: int = 0
    generated: int = 0
    skipped: int = 0
    failed: int = 0
    timed_out: bool = False

    def count(self, outcome):
        if outcome is RuleOutcome.GENERATED:
            self.generated += 1
        elif outcome is RuleOutcome.FAILED:
            self.failed += 1
        else:
            self.skipped += 1

    def to_dict(self):
        return {
            'success': not self.timed_out,
            'date': self.date,
            'processed': self.processed,
            'generated': self.generated,
            'skipped': self.skipped,
            'failed': self.failed,
        }


class GenerationJob:
    """
    Materialise due recurring rules for one calendar day.

    Args:
        store: object providing fetch_eligible_rules(day),
            has_generation_log(rule_id, day) and record_generation(rule, day)
            (TobbyEngine in production)
        today_provider (callable): returns the date to generate for when
            run() isn't given one
        clock (callable): monotonic seconds, used for the time budget
        timeout (float): seconds the whole run may take; None reads
            JOB_TIMEOUT_SECONDS

    Example:
        summary = GenerationJob(TobbyEngine()).run()
        print(summary.to_dict())
    """

    def __init__(self, store, today_provider=config.today, clock=time.monotonic, timeout=None):
        self.store = store
        self.today_provider = today_provider
        self.clock = clock
        self.timeout = timeout if timeout is not None else config.get_job_timeout()

    def run(self, today=None):
        """
        Run the job once.

        Returns:
            GenerationSummary

        Raises:
            RuleFetchError: the eligible rules could not be loaded
            JobTimeoutError: the time budget ran out; carries the partial summary
        """
        today = today or self.today_provider()
        started = self.clock()
        summary = GenerationSummary(date=today.isoformat())

        logger.info("[GENERATION] Starting transaction generation for %s", summary.date)

        try:
            rules = self.store.fetch_eligible_rules(today)
        except StoreError as e:
            logger.error("[GENERATION] Error fetching recurring transactions: %s", e)
            raise RuleFetchError(str(e)) from e

        summary.processed = len(rules)
        logger.info("[GENERATION] Found %d active recurring transactions", len(rules))

        for rule in rules:
            if self.clock() - started > self.timeout:
                summary.timed_out = True
                logger.warning(
                    "[GENERATION] Time budget of %ss exhausted; %d rule(s) left unprocessed",
                    self.timeout,
                    summary.processed - summary.generated - summary.skipped - summary.failed,
                )
                raise JobTimeoutError(summary)

            summary.count(self.process_rule(rule, today))

        logger.info("[GENERATION] Generation summary: %s", summary.to_dict())
        return summary

    def process_rule(self, rule, today):
        """Evaluate and, if due, materialise a single rule. Never raises."""
        if not should_generate_today(rule, today):
            return RuleOutcome.NOT_DUE

        try:
            if self.store.has_generation_log(rule.id, today):
                logger.info("[GENERATION] Already generated for recurring_id: %s", rule.id)
                return RuleOutcome.ALREADY_GENERATED

            transaction_id = self.store.record_generation(rule, today)
        except DuplicateGenerationError:
            # Another run got there between the check and the insert
            logger.info("[GENERATION] Already generated for recurring_id: %s (concurrent run)", rule.id)
            return RuleOutcome.ALREADY_GENERATED
        except Exception:
            logger.exception("[GENERATION] Error processing recurring transaction %s", rule.id)
            return RuleOutcome.FAILED

        logger.info(
            "[GENERATION] Generated transaction %s for: %s (%s)",
            transaction_id, rule.description, rule.transaction_type,
        )
        return RuleOutcome.GENERATED
