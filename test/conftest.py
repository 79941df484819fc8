import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def make_container(tmp_path: Path, name: str = "t.db"):
    from backoffice.application.container import build_container

    return build_container(tmp_path / name)


def seed_tenant(container, name: str = "Shop") -> int:
    from backoffice.repositories.unit_of_work import SqliteUnitOfWork

    with SqliteUnitOfWork(container.repo) as u:
        tenant_id = container.repo.create_tenant(u.cur, name)
        container.accounting.initialize_chart_of_accounts(tenant_id, uow=u)
    return tenant_id


def add_customer(container, tenant_id: int, name: str = "Customer", opening_balance: float = 0.0, advance_balance: float = 0.0) -> int:
    from backoffice.repositories.unit_of_work import SqliteUnitOfWork

    with SqliteUnitOfWork(container.repo) as u:
        return container.repo.insert_customer(u.cur, tenant_id, name, opening_balance, advance_balance)


def insert_legacy_order(container, tenant_id: int, status: str, selected_products, product_quantities, customer_id=None) -> int:
    from backoffice.repositories.unit_of_work import SqliteUnitOfWork

    with SqliteUnitOfWork(container.repo) as u:
        number = container.repo.next_number(u.cur, "orders", tenant_id, "ORD-LEGACY-")
        return container.repo.insert_order(
            u.cur,
            tenant_id,
            customer_id,
            number,
            status,
            selected_products=selected_products,
            product_quantities=product_quantities,
        )
