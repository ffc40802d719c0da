from __future__ import annotations
from dataclasses import dataclass, field, asdict
from typing import List, Optional
from urllib.parse import urlparse

from schema_engine.services.taxonomy import TaxonomyProvider, TaxonomySnapshot, ci_match

def _s(x) -> str:
    return "" if x is None else str(x).strip()

def normalize_path(value: Optional[str]) -> str:
    """Canonical page path: leading slash, no trailing slash (except root), lowercase.

    Full URLs are reduced to their path. An empty value stays empty so a missing
    path can still be reported.
    """
    p = _s(value)
    if not p:
        return ""
    if p.lower().startswith(("http://", "https://")):
        p = urlparse(p).path or "/"
    if not p.startswith("/"):
        p = "/" + p
    if p != "/" and p.endswith("/"):
        p = p[:-1]
    return p.lower()

@dataclass
class RawRow:
    row_number: int
    domain: str = ""
    path: str = ""
    page_type: str = ""
    category: str = ""

    def is_empty(self) -> bool:
        return not any(_s(v) for v in (self.domain, self.path, self.page_type, self.category))

@dataclass
class NormalizedRow:
    row_number: int
    domain: str
    path: str
    page_type: str
    category: str

    def to_dict(self) -> dict:
        return asdict(self)

@dataclass
class ValidationReport:
    valid_rows: List[NormalizedRow] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    skipped_blank: int = 0

    @property
    def ok(self) -> bool:
        # a run needs zero errors and at least one usable row
        return not self.errors and bool(self.valid_rows)

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "valid_rows": [r.to_dict() for r in self.valid_rows],
            "errors": list(self.errors),
            "skipped_blank": self.skipped_blank,
        }

class RowNormalizer:
    """Maps free-text domain/page type/category values onto the live taxonomy.

    Matching is case-insensitive and scoped: page types are looked up within
    the row's domain, categories within the row's page type. Anything that
    does not match is passed through trimmed so validation can name it.
    """

    def __init__(self, taxonomy: TaxonomyProvider):
        self.taxonomy = taxonomy

    def _snapshot(self) -> TaxonomySnapshot:
        t = self.taxonomy
        if isinstance(t, TaxonomySnapshot):
            return t
        return TaxonomySnapshot(
            domains=tuple(t.list_domains()),
            page_types=tuple(t.list_page_types(active_only=False)),
            categories=tuple(t.list_categories(active_only=False)),
        )

    def normalize(self, raw: RawRow) -> NormalizedRow:
        snap = self._snapshot()
        domain = snap.match_domain(raw.domain) or _s(raw.domain)

        page_type = _s(raw.page_type)
        pt = ci_match(page_type, snap.page_types_for_domain(domain))
        if pt is not None:
            page_type = pt.id

        category = _s(raw.category)
        cat = ci_match(category, snap.categories_for_page_type(page_type))
        if cat is not None:
            category = cat.id

        return NormalizedRow(
            row_number=raw.row_number,
            domain=domain,
            path=normalize_path(raw.path),
            page_type=page_type,
            category=category,
        )

    def validate(self, rows: List[RawRow]) -> ValidationReport:
        snap = self._snapshot()
        report = ValidationReport()
        domains = set(snap.domains)

        for raw in rows:
            if raw.is_empty():
                report.skipped_blank += 1
                continue

            row = self.normalize(raw)
            n = row.row_number
            errors: List[str] = []

            if not row.path:
                errors.append(f"Row {n}: Path is required")

            if not row.domain:
                errors.append(f"Row {n}: Domain is required")
            elif row.domain not in domains:
                errors.append(f'Row {n}: Invalid domain "{row.domain}"')

            if not row.page_type:
                errors.append(f"Row {n}: Page type is required")
            elif not any(pt.id == row.page_type for pt in snap.page_types_for_domain(row.domain)):
                errors.append(f'Row {n}: Invalid page type "{row.page_type}" for domain "{row.domain}"')

            if not row.category:
                errors.append(f"Row {n}: Category is required")
            elif not any(c.id == row.category for c in snap.categories_for_page_type(row.page_type)):
                errors.append(f'Row {n}: Invalid category "{row.category}" for page type "{row.page_type}"')

            if errors:
                report.errors.extend(errors)
            else:
                report.valid_rows.append(row)

        return report

def validate_rows(rows: List[RawRow], taxonomy: TaxonomyProvider) -> ValidationReport:
    return RowNormalizer(taxonomy).validate(rows)
