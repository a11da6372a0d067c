"""
Schéma SQL (SQLAlchemy Core).

La cellule du domaine est un enregistrement immuable : elle n'est pas
mappée par l'ORM. La gate lit et écrit directement ces tables, ce qui
rend explicite le contrôle de version (UPDATE ... WHERE version = :attendue).

Deux tables :
- inventory_cell : une ligne par couple (produit, hub), suppression logique ;
- inventory_outbox : les events à publier, écrits dans la même transaction
  que la mutation de la cellule.
"""

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    false,
)

metadata = MetaData()

inventory_cell = Table(
    "inventory_cell",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("product_id", String(255), nullable=False),
    Column("hub_id", String(255), nullable=False),
    Column("quantity_in_hub", Integer, nullable=False),
    Column("reserved_quantity", Integer, nullable=False),
    Column("safety_stock", Integer, nullable=False),
    Column("reorder_point", Integer, nullable=False),
    Column("location", String(20), nullable=False),
    Column("last_restocked_at", DateTime, nullable=True),
    Column("version", Integer, nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=True),
    Column("created_by", String(255), nullable=True),
    Column("updated_at", DateTime, nullable=True),
    Column("updated_by", String(255), nullable=True),
    Column("is_deleted", Boolean, nullable=False, server_default=false()),
    Column("deleted_at", DateTime, nullable=True),
    Column("deleted_by", String(255), nullable=True),
)

# Unicité du couple parmi les lignes vivantes seulement : une suppression
# logique libère le couple.
Index(
    "uq_inventory_cell_live_pair",
    inventory_cell.c.product_id,
    inventory_cell.c.hub_id,
    unique=True,
    sqlite_where=inventory_cell.c.is_deleted == false(),
    postgresql_where=inventory_cell.c.is_deleted == false(),
)
Index("ix_inventory_cell_hub", inventory_cell.c.hub_id)
Index("ix_inventory_cell_product", inventory_cell.c.product_id)

inventory_outbox = Table(
    "inventory_outbox",
    metadata,
    Column("seq", BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True),
    Column("record_id", String(36), nullable=False, unique=True),
    Column("cell_id", String(36), nullable=False),
    Column("cell_version", Integer, nullable=False),
    Column("messages", JSON, nullable=False),
    Column("status", String(16), nullable=False, server_default="pending"),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("last_error", Text, nullable=True),
    Column("next_attempt_at", DateTime, nullable=True),
    Column("created_at", DateTime, nullable=False),
    Column("sent_at", DateTime, nullable=True),
)
Index("ix_inventory_outbox_status_seq", inventory_outbox.c.status, inventory_outbox.c.seq)
