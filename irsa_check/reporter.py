import threading
from dataclasses import dataclass, asdict, field
from typing import Any, Dict, List, Optional

from irsa_check.errors import EXIT_OK, FailureCategory, IrsaCheckError

PASS = "PASS"
FAIL = "FAIL"
SKIP = "SKIP"


@dataclass
class CheckResult:
    component: str
    check: str
    status: str
    details: str
    category: Optional[FailureCategory] = None
    meta: Dict[str, Any] = field(default_factory=dict)
    family: Optional[str] = None

    @property
    def id(self) -> str:
        return f"{self.component}.{self.check}"


class Reporter:
    """Append-only outcome log shared by every component of a run."""

    def __init__(self) -> None:
        self.checks: List[CheckResult] = []
        self._lock = threading.Lock()

    def add(self, component: str, check: str, status: str, details: str,
            category: Optional[FailureCategory] = None, meta: Optional[Dict[str, Any]] = None,
            family: Optional[str] = None) -> CheckResult:
        result = CheckResult(component=component, check=check, status=status, details=details,
                             category=category, meta=meta or {}, family=family)
        with self._lock:
            self.checks.append(result)
        return result

    def passed(self, component: str, check: str, details: str, meta: Optional[Dict[str, Any]] = None,
               family: Optional[str] = None) -> CheckResult:
        return self.add(component, check, PASS, details, meta=meta, family=family)

    def skipped(self, component: str, check: str, details: str, meta: Optional[Dict[str, Any]] = None,
                family: Optional[str] = None) -> CheckResult:
        return self.add(component, check, SKIP, details, meta=meta, family=family)

    def failed(self, component: str, check: str, error: IrsaCheckError, family: Optional[str] = None) -> CheckResult:
        return self.add(component, check, FAIL, error.message, category=error.category, meta=error.meta, family=family)

    def for_component(self, component: str, family: Optional[str] = None) -> List[CheckResult]:
        with self._lock:
            return [c for c in self.checks
                    if c.component == component and (family is None or c.family == family)]

    def has_failures(self) -> bool:
        return any(c.status == FAIL for c in self.checks)

    def failure_categories(self) -> List[FailureCategory]:
        seen = {c.category for c in self.checks if c.status == FAIL and c.category is not None}
        return [cat for cat in FailureCategory if cat in seen]

    def exit_code(self) -> int:
        categories = self.failure_categories()
        if categories:
            return categories[0].exit_code
        if self.has_failures():
            # a failure recorded without a category still has to break the run
            return FailureCategory.DISCOVERY.exit_code
        return EXIT_OK

    def to_json(self) -> Dict[str, Any]:
        checks = []
        for c in self.checks:
            item = asdict(c)
            item["category"] = c.category.name.lower() if c.category else None
            checks.append(item)
        return {"checks": checks, "exit_code": self.exit_code()}

    def print_text(self) -> None:
        for c in self.checks:
            prefix = f"{c.family}/" if c.family else ""
            print(f"[{c.status}] {prefix}{c.id}: {c.details}")
        total = len(self.checks)
        fails = len([c for c in self.checks if c.status == FAIL])
        skips = len([c for c in self.checks if c.status == SKIP])
        passes = total - fails - skips
        print("")
        print(f"Summary: {passes} passed, {skips} skipped, {fails} failed (total {total})")
