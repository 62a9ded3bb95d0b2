from app import app, db, Flock, House, DailyLog, HealthRecord
from datetime import date, timedelta
import random

with app.app_context():
    db.create_all()

    house = House.query.first()
    if not house:
        house = House(name="TestHouse")
        db.session.add(house)
        db.session.commit()

    flock = Flock.query.filter_by(batch_id="TestFlock").first()
    if not flock:
        flock = Flock(
            house_id=house.id,
            batch_id="TestFlock",
            name="Test Layers",
            bird_type='Layer',
            production_stage='Layer',
            breed='ISA Brown',
            start_date=date.today() - timedelta(days=90),
            initial_age_days=140,
            initial_count=5000,
            current_count=5000,
            status='Active'
        )
        db.session.add(flock)
        db.session.commit()

    # Create Logs (Last 90 days)
    day = len(flock.logs)
    for i in range(90):
        d = date.today() - timedelta(days=90-i)
        if DailyLog.query.filter_by(flock_id=flock.id, date=d).first():
            continue
        day += 1
        mortality = random.randint(0, 4)
        damaged = random.randint(20, 80)
        db.session.add(DailyLog(
            flock_id=flock.id,
            day=day,
            date=d,
            mortality=mortality,
            feed_consumed_kg=round(random.uniform(540, 580), 1),
            water_consumed_l=round(random.uniform(1000, 1150), 1),
            avg_weight_g=1800 + (i * 2),
            egg_production=random.randint(4000, 4600),
            egg_details={
                'morning': {'good': {'large': 0, 'medium': 0, 'small': 0}, 'damaged': 0},
                'afternoon': {'good': {'large': 0, 'medium': 0, 'small': 0}, 'damaged': damaged},
            },
        ))
        flock.current_count = max(0, flock.current_count - mortality)
    db.session.commit()

    # Vaccination programme
    if HealthRecord.query.filter_by(flock_id=flock.id).count() == 0:
        for offset, title, status in [(-30, 'Newcastle Booster', 'RESOLVED'), (-2, 'IB Booster', 'RESOLVED'), (5, 'Fowl Pox', 'OPEN')]:
            db.session.add(HealthRecord(
                flock_id=flock.id,
                date=date.today() + timedelta(days=offset),
                record_type='VACCINATION',
                title=title,
                status=status
            ))
        db.session.commit()

    print("Dummy data seeded.")
