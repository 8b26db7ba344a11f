"""
Event-driven cache invalidation.

Invalidation rules map application events (``content_created``,
``niche_updated``, ...) to the cache tags and key pattern they make stale.
Rules live in the ``cache_invalidation_rules`` table so every process
sharing the store applies the same ones.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..logging_config import get_logger
from ..metrics_collector import MetricsCollector
from .cache_manager import TieredCacheManager
from .persistent_store import PersistentStore


@dataclass
class InvalidationRule:
    """Cache invalidation rule configuration."""
    rule_name: str
    pattern: str
    tags: List[str] = field(default_factory=list)
    trigger_events: List[str] = field(default_factory=list)
    is_active: bool = True

    # Statistics
    triggered_count: int = 0
    keys_invalidated: int = 0
    last_triggered: Optional[datetime] = None

    def matches(self, event_type: str) -> bool:
        return self.is_active and event_type in self.trigger_events


DEFAULT_RULES = [
    InvalidationRule(
        rule_name='content_update',
        pattern='content:.*',
        tags=['content', 'analytics'],
        trigger_events=['content_created', 'content_updated', 'content_deleted'],
    ),
    InvalidationRule(
        rule_name='niche_update',
        pattern='niche:.*',
        tags=['niche', 'analytics'],
        trigger_events=['niche_created', 'niche_updated', 'niche_deleted'],
    ),
    InvalidationRule(
        rule_name='analytics_update',
        pattern='analytics:.*',
        tags=['analytics'],
        trigger_events=['content_created', 'content_updated', 'analytics_refresh'],
    ),
]


class CacheInvalidator:
    """Applies stored invalidation rules when events arrive."""

    def __init__(self, cache_manager: TieredCacheManager, store: PersistentStore,
                 metrics: Optional[MetricsCollector] = None):
        self.cache_manager = cache_manager
        self.store = store
        self.logger = get_logger(__name__, 'cache_invalidator')
        self.metrics = metrics if metrics is not None else cache_manager.metrics

        self.rules: Dict[str, InvalidationRule] = {}

        self.stats = {
            'rules_registered': 0,
            'events_processed': 0,
            'events_matched': 0,
            'keys_invalidated': 0,
            'invalidations_failed': 0,
            'total_processing_time': 0.0
        }

    async def load_rules(self, seed_defaults: bool = True) -> List[InvalidationRule]:
        """Seed the default rules (without overwriting edits) and load the active ones."""
        if seed_defaults:
            for rule in DEFAULT_RULES:
                await self.store.save_invalidation_rule(
                    rule.rule_name, rule.pattern, rule.tags, rule.trigger_events, replace=False
                )

        rows = await self.store.load_invalidation_rules(active_only=True)
        self.rules = {
            row['rule_name']: InvalidationRule(
                rule_name=row['rule_name'],
                pattern=row['pattern'],
                tags=list(row['tags'] or []),
                trigger_events=list(row['trigger_events'] or []),
                is_active=row['is_active'],
            )
            for row in rows
        }
        self.stats['rules_registered'] = len(self.rules)
        self.logger.info(f"Loaded {len(self.rules)} cache invalidation rules", operation="load_rules")
        return list(self.rules.values())

    async def register_rule(self, rule: InvalidationRule) -> None:
        """Persist a rule and make it effective immediately."""
        await self.store.save_invalidation_rule(
            rule.rule_name, rule.pattern, rule.tags, rule.trigger_events, is_active=rule.is_active
        )
        if rule.is_active:
            self.rules[rule.rule_name] = rule
        else:
            self.rules.pop(rule.rule_name, None)
        self.stats['rules_registered'] = len(self.rules)
        self.logger.info(f"Registered cache invalidation rule: {rule.rule_name}", operation="register_rule")

    async def handle_event(self, event_type: str) -> int:
        """
        Invalidate everything the active rules tie to ``event_type``.

        Tags from all matching rules are invalidated in one pass, then each
        rule's key pattern. Returns the number of entries removed.
        """
        start_time = time.time()
        self.stats['events_processed'] += 1

        matching = [rule for rule in self.rules.values() if rule.matches(event_type)]
        if not matching:
            self.logger.debug(f"No invalidation rules for event: {event_type}", operation="handle_event")
            return 0

        self.stats['events_matched'] += 1
        tags = sorted({tag for rule in matching for tag in rule.tags})
        removed = 0

        try:
            removed += await self.cache_manager.invalidate_by_tags(tags)
            for rule in matching:
                rule_removed = await self.cache_manager.invalidate_by_pattern(rule.pattern)
                removed += rule_removed
                rule.triggered_count += 1
                rule.keys_invalidated += rule_removed
                rule.last_triggered = datetime.utcnow()
        except Exception as e:
            self.stats['invalidations_failed'] += 1
            self.logger.error(f"Error handling invalidation event {event_type}: {e}", operation="handle_event")

        duration = time.time() - start_time
        self.stats['keys_invalidated'] += removed
        self.stats['total_processing_time'] += duration

        counter = self.metrics.get_counter('cache_invalidations_total')
        counter.increment(1, event_type=event_type)

        self.logger.info(
            f"Invalidation event {event_type} removed {removed} entries",
            operation="handle_event",
            rules=[rule.rule_name for rule in matching],
            tags=tags
        )
        return removed

    def get_stats(self) -> Dict[str, Any]:
        """Get invalidation statistics."""
        return {
            **self.stats,
            'rules': {
                name: {
                    'pattern': rule.pattern,
                    'tags': rule.tags,
                    'trigger_events': rule.trigger_events,
                    'triggered_count': rule.triggered_count,
                    'keys_invalidated': rule.keys_invalidated,
                    'last_triggered': rule.last_triggered.isoformat() if rule.last_triggered else None,
                }
                for name, rule in self.rules.items()
            }
        }
