# db_setup.py
import sys

from app import app
from models import db

with app.app_context():
    if '--drop' in sys.argv:
        print("Dropping existing CDE tables...")
        db.drop_all()
    print("Creating database tables (projects, documents, extractions, extracted_rows, cde_reports, comparisons)...")
    db.create_all()
    print("Tables created successfully!")
