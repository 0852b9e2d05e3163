from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Mapping, Protocol

from ..config import DiscoveryConfig
from ..errors import PipelineError
from ..models import (
    Campaign,
    CampaignStatus,
    Candidate,
    DiscoveryFailed,
    DiscoveryNotDue,
    DiscoveryOutcome,
    DiscoverySuccess,
    NewQueueItem,
    SourceType,
)
from ..queue import WorkQueue
from ..services import campaign_service
from ..utils import log_event, normalize_url, parse_datetime, utc_now
from .policy import evaluate_candidate, is_similar_title, resolve_policy
from .scoring import score_priority

PauseListener = Callable[[str, str], None]

CAMPAIGNS_PER_PAUSE = 10
AUTO_PAUSE_ALERT = "campaign_auto_paused"


class Discoverer(Protocol):
    source_type: SourceType

    def discover(self, campaign: Campaign, source: dict[str, Any]) -> list[Candidate]: ...


class PublishedIndex(Protocol):
    def url_exists(self, url: str) -> bool: ...


class DiscoveryOrchestrator:
    """Runs the discoverers of a campaign and feeds their findings into the queue.

    Campaign bookkeeping (in-progress flag, error streak, last run) lives on the
    campaign row so every process sees the same state.
    """

    def __init__(
        self,
        conn: Any,
        queue: WorkQueue,
        discoverers: Mapping[SourceType, Discoverer],
        config: DiscoveryConfig,
        *,
        published: PublishedIndex | None = None,
        pause_listeners: Iterable[PauseListener] = (),
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        self.conn = conn
        self.queue = queue
        self.discoverers = dict(discoverers)
        self.config = config
        self.published = published
        self.pause_listeners = list(pause_listeners)
        self._sleep = sleep
        self.clock = clock
        self.logger = logger or logging.getLogger("autopress.discovery")

    def add_pause_listener(self, listener: PauseListener) -> None:
        self.pause_listeners.append(listener)

    def interval_minutes(self, campaign: Campaign) -> int:
        return campaign.discovery_interval_minutes or self.config.default_interval_minutes

    def next_due_at(self, campaign: Campaign) -> datetime | None:
        last = parse_datetime(campaign.last_discovery_end or campaign.last_discovery_start)
        if last is None:
            return None
        return last + timedelta(minutes=self.interval_minutes(campaign))

    def should_discover(self, campaign: Campaign) -> bool:
        if campaign.status != CampaignStatus.ACTIVE.value or campaign.discovery_in_progress:
            return False
        due_at = self.next_due_at(campaign)
        return due_at is None or self.clock() >= due_at

    def discover(self, campaign: Campaign) -> DiscoveryOutcome:
        if campaign.status != CampaignStatus.ACTIVE.value:
            return DiscoveryNotDue(campaign.id, "not_active")
        if campaign.discovery_in_progress:
            return DiscoveryNotDue(campaign.id, "in_progress")
        if not self.should_discover(campaign):
            return DiscoveryNotDue(campaign.id, "not_due")
        return self._run(campaign)

    def force_discover(self, campaign_id: str) -> DiscoveryOutcome:
        """Run discovery now regardless of the interval; status still applies."""
        campaign = campaign_service.require_campaign(self.conn, campaign_id)
        if campaign.status != CampaignStatus.ACTIVE.value:
            return DiscoveryNotDue(campaign.id, "not_active")
        if campaign.discovery_in_progress:
            return DiscoveryNotDue(campaign.id, "in_progress")
        return self._run(campaign)

    def discover_all(self) -> dict[str, int]:
        totals = {"total": 0, "success": 0, "failed": 0, "skipped": 0, "items_found": 0, "items_added": 0}
        campaigns = campaign_service.list_campaigns(self.conn, CampaignStatus.ACTIVE.value)
        for index, campaign in enumerate(campaigns):
            if index and index % CAMPAIGNS_PER_PAUSE == 0 and self.config.campaign_pause_seconds > 0:
                self._sleep(self.config.campaign_pause_seconds)
            totals["total"] += 1
            try:
                outcome = self.discover(campaign)
            except Exception as exc:  # noqa: BLE001
                totals["failed"] += 1
                log_event(
                    self.logger,
                    logging.ERROR,
                    "campaign_discovery_crashed",
                    campaign_id=campaign.id,
                    error=f"{type(exc).__name__}: {exc}",
                )
                continue
            if isinstance(outcome, DiscoverySuccess):
                totals["success"] += 1
                totals["items_found"] += outcome.items_found
                totals["items_added"] += outcome.items_added
            elif isinstance(outcome, DiscoveryFailed):
                totals["failed"] += 1
            else:
                totals["skipped"] += 1
        log_event(self.logger, logging.INFO, "discovery_tick", **totals)
        return totals

    def reset_stuck(self, age_seconds: int | None = None) -> int:
        if age_seconds is None:
            age_seconds = self.config.stuck_minutes * 60
        count = campaign_service.reset_stuck_discoveries(self.conn, age_seconds)
        if count:
            log_event(self.logger, logging.WARNING, "discovery_stuck_reset", count=count)
        return count

    def discovery_status(self, campaign_id: str) -> dict[str, Any]:
        campaign = campaign_service.require_campaign(self.conn, campaign_id)
        due_at = self.next_due_at(campaign)
        return {
            "campaign_id": campaign.id,
            "status": campaign.status,
            "in_progress": campaign.discovery_in_progress,
            "interval_minutes": self.interval_minutes(campaign),
            "last_discovery_start": campaign.last_discovery_start,
            "last_discovery_end": campaign.last_discovery_end,
            "last_status": campaign.last_status,
            "last_error": campaign.last_error,
            "last_item_count": campaign.last_item_count,
            "consecutive_errors": campaign.consecutive_errors,
            "auto_pause_threshold": self.config.auto_pause_threshold,
            "next_due_at": due_at.isoformat() if due_at else None,
            "due": self.should_discover(campaign),
            "queue": self.queue.stats(campaign.id),
        }

    def _run(self, campaign: Campaign) -> DiscoveryOutcome:
        if not campaign_service.mark_discovery_started(self.conn, campaign.id):
            return DiscoveryNotDue(campaign.id, "in_progress")
        log_event(self.logger, logging.INFO, "discovery_started", campaign_id=campaign.id)
        try:
            outcome = self._discover_sources(campaign)
        except Exception as exc:
            self._record_failure(campaign, f"{type(exc).__name__}: {exc}")
            raise
        if isinstance(outcome, DiscoveryFailed):
            paused = self._record_failure(campaign, outcome.reason)
            return DiscoveryFailed(campaign.id, outcome.reason, outcome.code, paused)
        campaign_service.record_discovery_success(self.conn, campaign.id, outcome.items_added)
        log_event(
            self.logger,
            logging.INFO,
            "discovery_completed",
            campaign_id=campaign.id,
            items_found=outcome.items_found,
            items_added=outcome.items_added,
            items_skipped=outcome.items_skipped,
            source_errors=len(outcome.source_errors),
        )
        return outcome

    def _discover_sources(self, campaign: Campaign) -> DiscoverySuccess | DiscoveryFailed:
        sources = [source for source in campaign.sources if _source_enabled(source)]
        if not sources:
            return DiscoveryFailed(campaign.id, "campaign has no active sources", "no_sources")
        errors: list[str] = []
        found = 0
        added = 0
        for source in sources:
            source_type = str(source.get("type") or campaign.campaign_type)
            try:
                candidates = self._candidates_for(campaign, source, source_type)
            except Exception as exc:  # noqa: BLE001
                if isinstance(exc, PipelineError):
                    error = exc.describe()
                else:
                    error = f"{type(exc).__name__}: {exc}"
                errors.append(error)
                log_event(
                    self.logger,
                    logging.ERROR,
                    "source_discovery_failed",
                    campaign_id=campaign.id,
                    source_type=source_type,
                    source=source.get("url") or source.get("keywords") or source.get("channel_id"),
                    error=error,
                )
                continue
            found += len(candidates)
            added += self._intake(campaign, source, source_type, candidates)
        if len(errors) == len(sources):
            return DiscoveryFailed(campaign.id, "; ".join(errors), "all_sources_failed")
        if errors and found == 0:
            return DiscoveryFailed(campaign.id, "; ".join(errors), "discovery_failed")
        return DiscoverySuccess(
            campaign_id=campaign.id,
            items_found=found,
            items_added=added,
            items_skipped=found - added,
            source_errors=errors,
        )

    def _candidates_for(self, campaign: Campaign, source: dict[str, Any], source_type: str) -> list[Candidate]:
        try:
            discoverer = self.discoverers[SourceType(source_type)]
        except (KeyError, ValueError):
            raise PipelineError(
                "unsupported_source_type",
                f"no discoverer for source type {source_type}",
                kind="configuration",
            ) from None
        return discoverer.discover(campaign, source)

    def _intake(
        self,
        campaign: Campaign,
        source: dict[str, Any],
        source_type: str,
        candidates: list[Candidate],
    ) -> int:
        policy = resolve_policy(campaign.settings, source, self.logger)
        limit = int(policy["limits"].get("max_items") or self.config.max_items_per_source or 0)
        threshold = float(policy["dedupe"].get("title_similarity") or 0)
        recent_titles = [
            item.title
            for item in self.queue.list_items(campaign.id, limit=int(policy["dedupe"].get("recent_titles") or 0))
            if item.title
        ]
        seen: set[str] = set()
        added = 0
        for candidate in candidates:
            if limit and added >= limit:
                break
            decision = evaluate_candidate(candidate, policy)
            if not decision.accepted:
                log_event(
                    self.logger,
                    logging.DEBUG,
                    "candidate_skipped",
                    campaign_id=campaign.id,
                    url=candidate.url,
                    reasons=",".join(decision.reasons),
                )
                continue
            url = normalize_url(candidate.url)
            if url in seen or self.queue.url_exists(campaign.id, url):
                continue
            seen.add(url)
            if self.published is not None and self.published.url_exists(url):
                continue
            if is_similar_title(candidate.title, recent_titles, threshold):
                log_event(
                    self.logger,
                    logging.DEBUG,
                    "candidate_similar_title",
                    campaign_id=campaign.id,
                    title=candidate.title,
                )
                continue
            result = self.queue.enqueue(
                NewQueueItem(
                    campaign_id=campaign.id,
                    source_url=url,
                    source_type=source_type,
                    title=candidate.title.strip(),
                    excerpt=candidate.excerpt or "",
                    source_data=_source_data(candidate, source),
                    priority=score_priority(candidate.published_at, source.get("priority"), self.clock()),
                )
            )
            if result.added:
                added += 1
                recent_titles.append(candidate.title)
        return added

    def _record_failure(self, campaign: Campaign, error: str) -> bool:
        errors = campaign_service.record_discovery_failure(self.conn, campaign.id, error)
        log_event(
            self.logger,
            logging.WARNING,
            "discovery_failed",
            campaign_id=campaign.id,
            consecutive_errors=errors,
            error=error,
        )
        if errors < self.config.auto_pause_threshold:
            return False
        reason = f"auto_pause:error_streak:{errors}"
        campaign_service.set_campaign_status(self.conn, campaign.id, CampaignStatus.PAUSED.value)
        campaign_service.record_health_alert(
            self.conn,
            campaign.id,
            AUTO_PAUSE_ALERT,
            f"paused after {errors} consecutive discovery failures; last error: {error}",
        )
        log_event(self.logger, logging.WARNING, AUTO_PAUSE_ALERT, campaign_id=campaign.id, reason=reason)
        for listener in self.pause_listeners:
            try:
                listener(campaign.id, reason)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    self.logger,
                    logging.ERROR,
                    "pause_listener_failed",
                    campaign_id=campaign.id,
                    error=f"{type(exc).__name__}: {exc}",
                )
        return True


def _source_enabled(source: dict[str, Any]) -> bool:
    status = source.get("status")
    return not status or str(status).strip().lower() == "active"


def _source_data(candidate: Candidate, source: dict[str, Any]) -> dict[str, Any]:
    data: dict[str, Any] = {
        "published_date": candidate.published_at,
        "author": candidate.author,
        "image_url": candidate.image_url,
        "categories": list(candidate.categories),
        "source_name": candidate.source_name,
        "source_url": source.get("url"),
    }
    if candidate.extra:
        data["extra"] = dict(candidate.extra)
    return {key: value for key, value in data.items() if value not in (None, [], "")}

