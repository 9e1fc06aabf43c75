import os
from datetime import datetime, timedelta

from werkzeug.security import check_password_hash, generate_password_hash

from .app import create_app
from .models import (
    Batch,
    BatchSubscriptionAssignment,
    Exam,
    StudentSubscription,
    SubscriptionPlan,
    User,
    db,
    seed_default_settings,
)
from .questions import add_question

SAMPLE_QUESTIONS = [
    ('What does CPU stand for?', ['Central Processing Unit', 'Computer Personal Unit', 'Central Print Unit', 'Core Power Unit'], 0),
    ('Which data structure is FIFO?', ['Stack', 'Queue', 'Tree', 'Graph'], 1),
    ('What is 2 ** 5?', ['10', '25', '32', '64'], 2),
    ('Which keyword defines a function in Python?', ['func', 'define', 'lambda', 'def'], 3),
    ('HTTP status 404 means?', ['Not Found', 'Forbidden', 'Server Error', 'Redirect'], 0),
    ('Which SQL clause filters rows?', ['ORDER BY', 'WHERE', 'GROUP BY', 'JOIN'], 1),
]


def initialize_database():
    app = create_app()

    print("\n===========================================")
    print("      DATABASE SETUP & DIAGNOSTICS")
    print("===========================================")

    db_uri = app.config.get('SQLALCHEMY_DATABASE_URI', '')
    print(f"ℹ️  App Config URI: {db_uri}")
    if db_uri.startswith('sqlite:///'):
        print(f"📂 Target Database File: {os.path.abspath(db_uri.replace('sqlite:///', ''))}")

    with app.app_context():
        print("\n--- Resetting Database ---")
        db.drop_all()
        print("🗑️  Old tables dropped (SQL Reset).")
        db.create_all()
        seed_default_settings()
        print("✅ New tables created.")

        print("\n--- Adding Batch & Subscription ---")
        batch = Batch(name='Demo Batch', year=datetime.utcnow().year)
        plan = SubscriptionPlan(name='Monthly', duration_months=1, price=0.0)
        db.session.add_all([batch, plan])
        db.session.flush()
        db.session.add(BatchSubscriptionAssignment(batch_id=batch.id, plan_id=plan.id))
        print(f"✅ Added batch '{batch.name}' with plan '{plan.name}'")

        print("\n--- Adding Users ---")
        student = User(
            name='Test Student',
            email='student@test.com',
            password=generate_password_hash('password123'),
            role='student',
            batch_id=batch.id,
        )
        admin = User(
            name='Admin User',
            email='admin@test.com',
            password=generate_password_hash('admin'),
            role='admin',
        )
        db.session.add_all([student, admin])
        db.session.flush()
        now = datetime.utcnow()
        db.session.add(StudentSubscription(
            student_id=student.id,
            plan_id=plan.id,
            start_date=now,
            end_date=now + timedelta(days=30),
            status='active',
        ))
        print("✅ Added: student@test.com")
        print("✅ Added: admin@test.com")

        print("\n--- Adding Demo Exam ---")
        exam = Exam(
            name='Demo Exam',
            description='Short general knowledge exam',
            duration=30,
            total_marks=len(SAMPLE_QUESTIONS),
            pass_percentage=40,
            total_questions=len(SAMPLE_QUESTIONS),
            questions_to_display=5,
        )
        exam.assigned_batches.append(batch)
        db.session.add(exam)
        db.session.commit()

        for text, options, correct in SAMPLE_QUESTIONS:
            outcome = add_question(exam.id, text, [{'text': o, 'is_correct': i == correct} for i, o in enumerate(options)])
            if not outcome.ok:
                print(f"❌ Could not add question '{text}': {outcome.message}")
        print(f"✅ Added exam '{exam.name}' with {len(SAMPLE_QUESTIONS)} questions")

        print("\n--- 🔍 Verification Check ---")
        all_users = User.query.all()
        print(f"👥 Total Users Found in DB: {len(all_users)}")
        for u in all_users:
            print(f"   - ID: {u.id} | Email: {u.email} | Role: {u.role}")

        test_user = User.query.filter_by(email='student@test.com').first()
        if test_user and check_password_hash(test_user.password, 'password123'):
            print("\n✅ LOGIN CHECK PASSED: Password 'password123' matches hash.")
        else:
            print("\n❌ LOGIN CHECK FAILED")

    print("\n===========================================")
    print(" SETUP COMPLETE")
    print(" 1. Run 'python -m examportal.app'")
    print(" 2. Login with: student@test.com / password123")
    print("===========================================\n")


if __name__ == '__main__':
    initialize_database()
