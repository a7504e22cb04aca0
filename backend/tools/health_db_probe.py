from sqlalchemy import inspect, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError

from escrowhub import create_app
from escrowhub.extensions import db

# Tables the order / escrow / custody flow cannot run without.
CORE_TABLES = (
    "orders",
    "order_items",
    "escrow_records",
    "escrow_transitions",
    "pickup_transactions",
    "delivery_transactions",
    "payment_callbacks",
)


def _safe_uri(uri: str) -> str:
    if not uri:
        return "unknown"
    try:
        return make_url(uri).render_as_string(hide_password=True)
    except ArgumentError:
        return "unknown"


def main() -> int:
    app = create_app()
    with app.app_context():
        print("database:", _safe_uri(app.config.get("SQLALCHEMY_DATABASE_URI") or ""))
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            present = set(inspect(db.engine).get_table_names())
        except SQLAlchemyError as e:
            print("SELECT 1: fail")
            print("error:", str(e)[:300])
            return 1
        print("SELECT 1: success")
        missing = [t for t in CORE_TABLES if t not in present]
        if missing:
            print("missing tables:", ", ".join(missing), "(run `flask db upgrade`)")
            return 2
        print("core tables: present")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
