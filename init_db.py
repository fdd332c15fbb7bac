"""
Database Initialization Script
Run this script to create all database tables and seed initial data
"""
import os
import sys
from app import create_app
from models import db, User, Device, Media, SubscriptionTier, utcnow


def init_database():
    """Initialize database with tables and seed data"""

    app = create_app()

    with app.app_context():
        # Drop all tables (use with caution in production!)
        print("Dropping existing tables...")
        db.drop_all()

        # Create all tables
        print("Creating database tables...")
        db.create_all()

        # Create sample data for testing (optional)
        if os.getenv('FLASK_ENV', 'development') == 'development':
            print("Adding sample data for development...")

            owner = User(
                username='demo',
                email='demo@signage.local',
                timezone='UTC',
                subscription_tier=SubscriptionTier.ENTERPRISE
            )
            db.session.add(owner)
            db.session.flush()

            device = Device(
                user_id=owner.id,
                name='Lobby Screen',
                serial='DEMO-0001',
                timezone='UTC',
                is_paired=True,
                paired_at=utcnow()
            )
            db.session.add(device)

            db.session.add(Media(
                user_id=owner.id,
                url='https://example.com/media/welcome.jpg',
                media_type='image',
                title='Welcome',
                is_default=True
            ))

        # Commit all changes
        db.session.commit()

        print("\n" + "=" * 50)
        print("Database initialized successfully!")
        print("=" * 50 + "\n")


if __name__ == '__main__':
    confirm = input("This will delete all existing data. Continue? (yes/no): ")
    if confirm.lower() == 'yes':
        init_database()
    else:
        print("Database initialization cancelled.")
        sys.exit(0)
