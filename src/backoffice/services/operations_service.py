from __future__ import annotations

import json
import logging
import zipfile
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from backoffice.domain.errors import NotFoundError
from backoffice.domain.models import ProductKey
from backoffice.repositories.unit_of_work import SqliteUnitOfWork


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthReport:
    sqlite_integrity: str
    db_size_bytes: int
    logs_count: int
    generated_at: str
    unbalanced_transactions: list = field(default_factory=list)
    duplicate_live_returns: list = field(default_factory=list)
    oversold_stock: list = field(default_factory=list)
    balance_cache_drift: list = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.sqlite_integrity == "ok" and not (
            self.unbalanced_transactions or self.duplicate_live_returns or self.oversold_stock or self.balance_cache_drift
        )


class OperationsService:
    def __init__(
        self,
        repo,
        stock_validation,
        db_path: Path | str,
        logs_dir: Path | str,
        tolerance: float = 0.01,
        bulk_timeout: float = 30.0,
    ):
        self.repo = repo
        self.stock = stock_validation
        self.db_path = Path(db_path)
        self.logs_dir = Path(logs_dir)
        self.tolerance = float(tolerance)
        self.bulk_timeout = float(bulk_timeout)

    def _oversold(self, tenant_id: int) -> list[dict]:
        rows = []
        held = self.stock.allocated_stock(tenant_id)
        for key, qty in held.items():
            if isinstance(key, ProductKey):
                product = self.repo.get_product(tenant_id, key.product_id)
                current = product.current_quantity if product else 0
            else:
                found = self.repo.get_variant(tenant_id, key.variant_id)
                current = found[0].current_quantity if found else 0
            if qty > current:
                rows.append({"tenant_id": tenant_id, "key": repr(key), "allocated": qty, "current": current})
        return rows

    def run_health_check(self, tenant_id: Optional[int] = None) -> HealthReport:
        integrity = self.repo.integrity_check()
        logs_count = len(list(self.logs_dir.glob("*.log"))) if self.logs_dir.exists() else 0
        size = self.db_path.stat().st_size if self.db_path.exists() else 0

        tenants = [tenant_id] if tenant_id is not None else self.repo.list_tenant_ids()
        oversold = [row for t in tenants for row in self._oversold(t)]

        report = HealthReport(
            sqlite_integrity=integrity,
            db_size_bytes=size,
            logs_count=logs_count,
            generated_at=datetime.now().isoformat(timespec="seconds"),
            unbalanced_transactions=self.repo.unbalanced_transactions(tenant_id, self.tolerance),
            duplicate_live_returns=self.repo.duplicate_live_return_transactions(tenant_id),
            oversold_stock=oversold,
            balance_cache_drift=self.repo.account_cache_drift(tenant_id),
        )
        if report.ok:
            log.info("health_check_ok tenant=%s", tenant_id)
        else:
            log.warning(
                "health_check_failed tenant=%s integrity=%s unbalanced=%s duplicates=%s oversold=%s drift=%s",
                tenant_id,
                integrity,
                len(report.unbalanced_transactions),
                len(report.duplicate_live_returns),
                len(report.oversold_stock),
                len(report.balance_cache_drift),
            )
        return report

    def export_diagnostics(self, target_dir: Path | str | None = None, tenant_id: Optional[int] = None) -> Path:
        out_dir = Path(target_dir) if target_dir else self.db_path.parent
        out_dir.mkdir(parents=True, exist_ok=True)

        ts = datetime.now().strftime("%Y%m%d_%H%M%S")
        zip_path = out_dir / f"diagnostics_{ts}.zip"
        report = self.run_health_check(tenant_id)

        with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            if self.logs_dir.exists():
                for f in sorted(self.logs_dir.glob("*.log")):
                    zf.write(f, arcname=f"logs/{f.name}")
            payload = asdict(report)
            payload["ok"] = report.ok
            zf.writestr("health_report.json", json.dumps(payload, ensure_ascii=False, indent=2))

        log.info("diagnostics_exported path=%s", zip_path)
        return zip_path

    def wipe_tenant_data(self, tenant_id: int) -> dict[str, int]:
        if not self.repo.tenant_exists(tenant_id):
            raise NotFoundError("Tenant not found.")
        with SqliteUnitOfWork(self.repo, timeout=self.bulk_timeout) as u:
            counts = self.repo.wipe_tenant(u.cur, tenant_id)
        log.warning("tenant_wiped tenant=%s rows=%s", tenant_id, sum(counts.values()))
        return counts
