from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from dealerhub.app.core.clock import utcnow
from dealerhub.app.db.models.models_v1 import Dealer, Discount, Product, ProductPrice, User
from dealerhub.app.db.models.core_types import DiscountType, Role

DEMO_PRODUCTS = [
    # code, nom, stock, prix
    ("FLT-100", "Oil filter", 120, Decimal("100.00")),
    ("BRK-200", "Brake pad set", 40, Decimal("250.00")),
    ("BAT-300", "Battery 72Ah", 8, Decimal("1200.00")),
]


def run_seed(db: Session | None = None) -> dict:
    owns_session = db is None
    if owns_session:
        from dealerhub.app.db.session import SessionLocal

        db = SessionLocal()
    try:
        now = utcnow()

        # 1) Bayi de démo
        dealer = db.scalar(select(Dealer).where(Dealer.name == "Demo Dealer"))
        if not dealer:
            dealer = Dealer(name="Demo Dealer", active=True)
            db.add(dealer)
            db.flush()

        # 2) Utilisateurs : un admin (sans bayi), un utilisateur bayi
        admin = db.scalar(select(User).where(User.name == "ADMIN"))
        if not admin:
            admin = User(name="ADMIN", role=Role.admin, active=True)
            db.add(admin)
        buyer = db.scalar(select(User).where(User.name == "DEMO-BUYER"))
        if not buyer:
            buyer = User(name="DEMO-BUYER", role=Role.dealer, dealer_id=dealer.id, active=True)
            db.add(buyer)

        # 3) Produits + prix courant
        for code, name, stock, amount in DEMO_PRODUCTS:
            product = db.scalar(select(Product).where(Product.code == code))
            if product:
                continue
            product = Product(code=code, name=name, stock_quantity=stock, active=True)
            db.add(product)
            db.flush()
            db.add(ProductPrice(product_id=product.id, currency="TRY", amount=amount, valid_from=now, active=True))

        # 4) Remise WINTER10
        discount = db.scalar(select(Discount).where(Discount.name == "WINTER10"))
        if not discount:
            db.add(
                Discount(
                    name="WINTER10",
                    discount_type=DiscountType.percentage,
                    discount_value=Decimal("10"),
                    start_date=now - timedelta(days=1),
                    end_date=now + timedelta(days=90),
                    is_active=True,
                    minimum_order_amount=Decimal("100.00"),
                    maximum_discount_amount=Decimal("50.00"),
                    usage_limit=2,
                    description="Winter campaign: 10% off, capped at 50",
                )
            )

        db.commit()
        summary = {
            "dealer_id": dealer.id,
            "admin_id": admin.id,
            "buyer_id": buyer.id,
            "products": len(DEMO_PRODUCTS),
        }
        print(f"SEED OK: {summary}")
        return summary
    finally:
        if owns_session:
            db.close()


if __name__ == "__main__":
    run_seed()
