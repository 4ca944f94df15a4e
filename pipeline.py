"""
Applies the feature catalog to a kernel checkout

Units run one at a time, top to bottom. Whether a unit runs is decided
once, when the runner reaches it. Mandatory units abort the run on the
first failing step; best-effort units skip steps whose artifact could
not be fetched or whose patch does not apply, and carry on.
"""
import enum
from dataclasses import dataclass, field
from typing import Mapping, Optional

from build_common import BuildError, FetchFailed, PatchIncompatible, log_message
from checkout import Checkout
from features import FEATURE_CATALOG, Criticality, FeatureUnit, FetchFn, Toggle
from fetcher import fetch as default_fetch

# Step failures a best-effort unit may skip over
SKIPPABLE_ERRORS = (FetchFailed, PatchIncompatible)


class UnitStatus(enum.Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    SKIPPED_WITH_WARNING = "skipped-with-warning"
    FAILED = "failed"


@dataclass
class UnitResult:
    name: str
    status: UnitStatus
    warnings: list = field(default_factory=list)
    failed_step: Optional[str] = None
    error: Optional[str] = None


@dataclass
class PipelineRun:
    results: list = field(default_factory=list)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def result(self, name: str) -> Optional[UnitResult]:
        for result in self.results:
            if result.name == name:
                return result
        return None

    def summary(self) -> str:
        return ", ".join(f"{r.name}: {r.status.value}" for r in self.results)


class FeaturePipeline:
    """
    Runs feature units against one checkout

    Args:
        checkout (Checkout): Tree every unit mutates
        units: Units in application order
        fetch: Fetch function used for patches and clones
    """

    def __init__(self, checkout: Checkout,
                 units=FEATURE_CATALOG,
                 fetch: FetchFn = default_fetch):
        names = [unit.name for unit in units]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate feature unit names: {', '.join(duplicates)}")

        self.checkout = checkout
        self.units = tuple(units)
        self.fetch = fetch

    def toggleable(self) -> list[str]:
        return [unit.name for unit in self.units if not unit.unconditional]

    def is_enabled(self, unit: FeatureUnit, selection: Mapping[str, Toggle]) -> bool:
        if unit.unconditional:
            return True
        return selection.get(unit.name, Toggle.UNSPECIFIED) is Toggle.ENABLED

    def run(self, selection: Mapping[str, Toggle]) -> PipelineRun:
        """
        Applies every enabled unit in order

        Args:
            selection: Toggle per feature name; missing names are unspecified

        Returns:
            PipelineRun: Per-unit results; error is set if a mandatory
            step failed, in which case later units were not started
        """
        unknown = sorted(set(selection) - set(self.toggleable()))
        if unknown:
            raise ValueError(f"Unknown features in selection: {', '.join(unknown)}")

        run = PipelineRun()
        for unit in self.units:
            if not self.is_enabled(unit, selection):
                toggle = selection.get(unit.name, Toggle.UNSPECIFIED)
                log_message(f"SKIP: {unit.name} ({unit.description}), {toggle.value}")
                run.results.append(UnitResult(unit.name, UnitStatus.SKIPPED))
                continue

            result = self.apply_unit(unit)
            run.results.append(result)
            if result.status is UnitStatus.FAILED:
                run.error = (f"Feature '{unit.name}' failed at step "
                             f"'{result.failed_step}': {result.error}")
                log_message(f"[ERROR] {run.error}")
                break

        log_message(f"Feature pipeline finished: {run.summary()}")
        return run

    def apply_unit(self, unit: FeatureUnit) -> UnitResult:
        log_message(f"Adding {unit.name} ({unit.description}, {unit.criticality.value})...")
        result = UnitResult(unit.name, UnitStatus.APPLIED)

        for step in unit.steps():
            description = step.describe()
            log_message(f"[{unit.name}] {description}")
            try:
                step.apply(self.checkout, self.fetch)
            except SKIPPABLE_ERRORS as e:
                if unit.criticality is Criticality.BEST_EFFORT:
                    log_message(f"WARNING: {e}, skipping '{description}' and continuing")
                    result.warnings.append(str(e))
                    result.status = UnitStatus.SKIPPED_WITH_WARNING
                    continue
                return self.failed(result, description, e)
            except (BuildError, OSError) as e:
                return self.failed(result, description, e)

        if result.status is UnitStatus.APPLIED:
            log_message(f"{unit.name} applied successfully")
        else:
            log_message(f"WARNING: {unit.name} applied with {len(result.warnings)} "
                        f"skipped step(s)")
        return result

    @staticmethod
    def failed(result: UnitResult, step: str, error: Exception) -> UnitResult:
        result.status = UnitStatus.FAILED
        result.failed_step = step
        result.error = str(error)
        return result
