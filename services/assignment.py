from sqlalchemy.orm import Session
from data.database import Experiment, Variant, Assignment
from data.stores import AssignmentStore, ExperimentStore
from models.assignment import AssignmentResult, ExperimentAssignment
from datetime import datetime
import logging
from log import truncate_user_id
from services.bucketing import select_weighted_variant, stable_key_for
from services.cache import CacheClient
from services.config_merge import BASELINE_CONFIG, merge_variant_configs
from services.errors import NoEligibleVariants, storage_errors
from services.targeting import matches_targeting
from services.timeutil import as_utc, utcnow

logger = logging.getLogger(__name__)

# Stamped on newly created assignments; bump when the bucketing inputs change
ASSIGNMENT_VERSION = 1


def is_within_schedule(experiment: Experiment, now: datetime) -> bool:
    """Open start/end bounds are always satisfied."""
    start_at = as_utc(experiment.start_at)
    end_at = as_utc(experiment.end_at)
    if start_at is not None and start_at > now:
        return False
    if end_at is not None and end_at < now:
        return False
    return True


def get_running_experiments(db: Session, cache: CacheClient) -> list[Experiment]:
    """ Get the RUNNING experiment catalog, cache first """

    experiments = cache.get_running_experiments()
    if experiments is None:
        experiments = ExperimentStore(db).list_running()
        cache.set_running_experiments(experiments)
        logger.debug("get_running_experiments cache miss (%d experiments)", len(experiments))
    else:
        logger.debug("get_running_experiments cache hit (%d experiments)", len(experiments))

    return experiments


def get_eligible_experiments(experiments: list[Experiment], now: datetime, platform: str | None = None,
                             app_version: str | None = None) -> list[Experiment]:
    eligible = [
        experiment for experiment in experiments
        if is_within_schedule(experiment, now)
        and matches_targeting(experiment.targeting, platform=platform, app_version=app_version)
        and experiment.variants
    ]
    return sorted(eligible, key=lambda experiment: experiment.experiment_id)


def get_existing_assignments(db: Session, cache: CacheClient, anonymous_user_id: str,
                             experiment_ids: list[str]) -> dict[str, Assignment]:
    """ Get existing assignments, cache first, one batched read for the misses """

    found: dict[str, Assignment] = {}
    misses = []
    for experiment_id in experiment_ids:
        cached = cache.get_assignment(experiment_id, anonymous_user_id)
        if cached is not None:
            found[experiment_id] = cached
        else:
            misses.append(experiment_id)

    if misses:
        stored = AssignmentStore(db).find_for_user(anonymous_user_id, misses)
        for experiment_id, assignment in stored.items():
            cache.set_assignment(assignment)
            found[experiment_id] = assignment
        logger.debug("get_existing_assignments: %d cache hits, %d read from db",
                     len(experiment_ids) - len(misses), len(stored))

    return found


def _assignment_row(anonymous_user_id: str, experiment_id: str, variant: Variant, context: dict,
                    now: datetime) -> dict:
    return {
        "anonymous_user_id": anonymous_user_id,
        "experiment_id": experiment_id,
        "variant_id": variant.variant_id,
        "assignment_version": ASSIGNMENT_VERSION,
        "context": context,
        "assigned_at": now,
    }


def resolve_assignment(db: Session, cache: CacheClient, anonymous_user_id: str, platform: str | None = None,
                       app_version: str | None = None, session_id: str | None = None,
                       install_id: str | None = None, now: datetime | None = None) -> AssignmentResult:
    """
    Resolves the user's variant for every eligible RUNNING experiment.

    Existing assignments are sticky. Missing ones are picked by weighted hash
    bucketing and written insert-if-absent in a single statement; whatever row
    storage holds afterwards wins, so concurrent first requests converge.
    Variant configs are folded over the baseline in experiment_id order.
    """
    now = as_utc(now) if now else utcnow()
    context = {
        "session_id": session_id,
        "platform": platform,
        "app_version": app_version,
        "install_id": install_id,
    }

    with storage_errors():
        try:
            experiments = get_running_experiments(db, cache)
            eligible = get_eligible_experiments(experiments, now, platform=platform, app_version=app_version)
            if not eligible:
                return AssignmentResult(assignment_version=ASSIGNMENT_VERSION, assignments=[],
                                        config=merge_variant_configs(BASELINE_CONFIG, []))

            existing = get_existing_assignments(db, cache, anonymous_user_id,
                                                [experiment.experiment_id for experiment in eligible])

            chosen: dict[str, Variant] = {}
            versions: list[int] = []
            pending: dict[str, Variant] = {}
            for experiment in eligible:
                variants_by_id = {variant.variant_id: variant for variant in experiment.variants}
                current = existing.get(experiment.experiment_id)
                if current is not None and current.variant_id in variants_by_id:
                    chosen[experiment.experiment_id] = variants_by_id[current.variant_id]
                    versions.append(current.assignment_version)
                    continue
                try:
                    pending[experiment.experiment_id] = select_weighted_variant(
                        stable_key_for(anonymous_user_id, experiment.experiment_id),
                        experiment.variants,
                        experiment_id=experiment.experiment_id,
                    )
                except NoEligibleVariants as e:
                    logger.warning("skipping experiment %s: %s", experiment.experiment_id, e)

            if pending:
                rows = [_assignment_row(anonymous_user_id, experiment_id, variant, context, now)
                        for experiment_id, variant in pending.items()]
                persisted = AssignmentStore(db).insert_if_absent(rows)
                db.commit()

                for experiment in eligible:
                    selected = pending.get(experiment.experiment_id)
                    if selected is None:
                        continue
                    variants_by_id = {variant.variant_id: variant for variant in experiment.variants}
                    stored = persisted.get(experiment.experiment_id)
                    if stored is None:
                        chosen[experiment.experiment_id] = selected
                        continue
                    cache.set_assignment(stored)
                    versions.append(stored.assignment_version)
                    if stored.variant_id != selected.variant_id:
                        logger.info("assignment race for user %s on %s resolved to stored variant %s",
                                    truncate_user_id(anonymous_user_id), experiment.experiment_id,
                                    stored.variant_id)
                    # stored row wins unless its variant has since been removed
                    chosen[experiment.experiment_id] = variants_by_id.get(stored.variant_id, selected)
        except Exception:
            db.rollback()
            raise

    assignments = []
    configs = []
    for experiment in eligible:
        variant = chosen.get(experiment.experiment_id)
        if variant is None:
            continue
        assignments.append(ExperimentAssignment(experiment_id=experiment.experiment_id,
                                                variant_id=variant.variant_id,
                                                variant_name=variant.variant_name))
        configs.append(variant.config)

    logger.info("assignment for user %s: %s", truncate_user_id(anonymous_user_id),
                ",".join(f"{a.experiment_id}:{a.variant_id}" for a in assignments) or "-")

    return AssignmentResult(
        assignment_version=max(versions + [ASSIGNMENT_VERSION]),
        assignments=assignments,
        config=merge_variant_configs(BASELINE_CONFIG, configs),
    )
