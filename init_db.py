from app import app, db, House, InventoryItem

DEFAULT_ITEMS = [
    # name, category, unit, stock, min, cost, target
    ('Layer Mash', 'Feed', 'bags', 40, 10, 28.0, 'Layer'),
    ('Broiler Starter', 'Feed', 'kg', 500, 100, 0.6, 'Broiler'),
    ('Newcastle Vaccine', 'Medicine', 'vials', 20, 5, 12.5, None),
    ('Oxytetracycline', 'Medicine', 'units', 30, 5, 3.0, None),
    ('Table Eggs', 'Other', 'units', 0, 100, 0.15, None),
]

def init_db():
    with app.app_context():
        db.create_all()

        # Pre-populate Houses
        if House.query.count() == 0:
            for name in ['H1', 'H2', 'H3']:
                db.session.add(House(name=name))
                app.logger.info("Added House: %s", name)

        if InventoryItem.query.count() == 0:
            for name, category, unit, stock, min_stock, cost, target in DEFAULT_ITEMS:
                db.session.add(InventoryItem(
                    name=name, category=category, unit=unit, current_stock=stock,
                    min_stock_level=min_stock, cost_per_unit=cost, target_bird_type=target
                ))
                app.logger.info("Added Inventory Item: %s", name)

        db.session.commit()
        print("Database initialized.")

if __name__ == "__main__":
    init_db()
