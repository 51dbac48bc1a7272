# reset_db.py
"""Drop and recreate every table: ``python -m idelivery.reset_db``."""
from idelivery.database import engine, metadata
from idelivery import models  # noqa: F401

print("🔄 Dropping tables...")
metadata.drop_all(engine)
print("✅ Tables dropped.")

print("🧱 Creating tables...")
metadata.create_all(engine)
print("✅ Tables recreated successfully!")
