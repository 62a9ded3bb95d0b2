from flask import Flask, request, redirect, url_for, flash, send_from_directory, send_file, jsonify, get_flashed_messages, current_app, Response
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from werkzeug.utils import secure_filename
from datetime import datetime, date, timedelta
import os
import io
import json
import base64
import calendar
from dotenv import load_dotenv
import pandas as pd
from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill, Alignment
from metrics import (
    METRICS_REGISTRY, derive_enriched_logs, summarize, derive_flock_overview_metrics,
    aggregate_trend, chart_moving_average, newest_first, flock_age_days,
    dashboard_metrics, egg_production_trend, round_safe,
)
from analysis import build_analyst, DEFAULT_MODEL

load_dotenv()

FLOCK_STATUSES = ('Active', 'Harvested', 'Quarantine', 'Planned')
BIRD_TYPES = ('Layer', 'Broiler', 'Breeder')
PRODUCTION_STAGES = ('Starter', 'Grower', 'Finisher', 'Chick', 'Pullet', 'Layer')
INVENTORY_CATEGORIES = ('Feed', 'Medicine', 'Equipment', 'Other')
TRANSACTION_TYPES = ('Purchase', 'Usage', 'Adjustment', 'Waste', 'Production')
DEBIT_TYPES = ('Usage', 'Waste')
RECORD_TYPES = ('TREATMENT', 'VACCINATION', 'ISOLATION', 'CHECKUP')
RECORD_STATUSES = ('OPEN', 'RESOLVED')
EGG_ITEM_NAME = 'Table Eggs'

app = Flask(__name__)
basedir = os.path.abspath(os.path.dirname(__file__))
database_url = os.getenv('DATABASE_URL')
if database_url and database_url.startswith("postgres://"):
    database_url = database_url.replace("postgres://", "postgresql://", 1)

app.config['SQLALCHEMY_DATABASE_URI'] = database_url or 'sqlite:///' + os.path.join(basedir, 'instance', 'farm.db')
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'dev_key')
app.config['UPLOAD_FOLDER'] = os.getenv('UPLOAD_FOLDER') or os.path.join(basedir, 'uploads')
app.config['OPENAI_API_KEY'] = os.getenv('OPENAI_API_KEY')
app.config['ANALYSIS_MODEL'] = os.getenv('ANALYSIS_MODEL', DEFAULT_MODEL)
app.config['FEED_BAG_KG'] = float(os.getenv('FEED_BAG_KG', '50'))
app.config['EGG_UNIT_VALUE'] = float(os.getenv('EGG_UNIT_VALUE', '0.15'))
os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)
os.makedirs(os.path.join(basedir, 'instance'), exist_ok=True)

db = SQLAlchemy(app)
migrate = Migrate(app, db)

app.extensions['flock_analyst'] = build_analyst(app.config['OPENAI_API_KEY'], app.config['ANALYSIS_MODEL'])

# --- Models ---

class House(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), unique=True, nullable=False)
    flocks = db.relationship('Flock', backref='house', lazy=True)

class Flock(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    house_id = db.Column(db.Integer, db.ForeignKey('house.id'), nullable=False)
    batch_id = db.Column(db.String(100), unique=True, nullable=False)
    name = db.Column(db.String(100), nullable=False)
    bird_type = db.Column(db.String(20), default='Layer', nullable=False) # 'Layer', 'Broiler', 'Breeder'
    production_stage = db.Column(db.String(20), nullable=True)
    breed = db.Column(db.String(100), nullable=True)
    source = db.Column(db.String(100), nullable=True)

    start_date = db.Column(db.Date, nullable=False, default=date.today) # Date of arrival
    initial_age_days = db.Column(db.Integer, default=0, nullable=False, server_default='0')

    # Placement and live counts
    initial_count = db.Column(db.Integer, default=0, nullable=False, server_default='0')
    initial_cost = db.Column(db.Float, default=0.0)
    current_count = db.Column(db.Integer, default=0, nullable=False, server_default='0')
    total_sold = db.Column(db.Integer, default=0, nullable=False, server_default='0')

    status = db.Column(db.String(20), default='Active', nullable=False)

    logs = db.relationship('DailyLog', backref='flock', lazy=True, cascade="all, delete-orphan", order_by='DailyLog.day')
    health_records = db.relationship('HealthRecord', backref='flock', lazy=True, cascade="all, delete-orphan")

    @property
    def is_layer(self):
        return self.bird_type == 'Layer'

    @property
    def age_days(self):
        return flock_age_days(self)

class DailyLog(db.Model):
    __table_args__ = (db.UniqueConstraint('flock_id', 'date', name='uq_daily_log_flock_date'),)

    id = db.Column(db.Integer, primary_key=True)
    flock_id = db.Column(db.Integer, db.ForeignKey('flock.id'), nullable=False)
    day = db.Column(db.Integer, nullable=False) # 1-based sequence within the flock
    date = db.Column(db.Date, nullable=False, default=date.today)

    mortality = db.Column(db.Integer, default=0, nullable=False, server_default='0')
    mortality_reason = db.Column(db.String(255), nullable=True)
    mortality_image = db.Column(db.String(200), nullable=True) # Filename under UPLOAD_FOLDER

    feed_consumed_kg = db.Column(db.Float, default=0.0, nullable=False, server_default='0')
    water_consumed_l = db.Column(db.Float, default=0.0, nullable=False, server_default='0')
    avg_weight_g = db.Column(db.Float, default=0.0, nullable=False, server_default='0')

    # Layers only
    egg_production = db.Column(db.Integer, nullable=True)
    egg_details = db.Column(db.JSON, nullable=True) # {'morning': {'good': {...}, 'damaged': n}, 'afternoon': {...}}

    notes = db.Column(db.Text)

class InventoryItem(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    category = db.Column(db.String(20), nullable=False) # 'Feed', 'Medicine', 'Equipment', 'Other'
    unit = db.Column(db.String(20), nullable=False) # 'kg', 'bags', 'units', 'liters'
    current_stock = db.Column(db.Float, default=0.0)
    min_stock_level = db.Column(db.Float, default=0.0)
    cost_per_unit = db.Column(db.Float, default=0.0)
    target_bird_type = db.Column(db.String(20), nullable=True) # Feed items
    location = db.Column(db.String(100), nullable=True)
    notes = db.Column(db.String(255), nullable=True)
    last_updated = db.Column(db.Date, nullable=True, default=date.today)

    transactions = db.relationship('InventoryTransaction', backref='item', lazy=True, cascade="all, delete-orphan")
    health_records = db.relationship('HealthRecord', backref='inventory_item', lazy=True)

    @property
    def is_low_stock(self):
        return (self.current_stock or 0) <= (self.min_stock_level or 0)

class InventoryTransaction(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    inventory_item_id = db.Column(db.Integer, db.ForeignKey('inventory_item.id'), nullable=False)
    transaction_type = db.Column(db.String(20), nullable=False) # 'Purchase', 'Usage', 'Adjustment', 'Waste', 'Production'
    quantity = db.Column(db.Float, nullable=False)
    transaction_date = db.Column(db.Date, nullable=False, default=date.today)
    notes = db.Column(db.String(255), nullable=True)

class HealthRecord(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    flock_id = db.Column(db.Integer, db.ForeignKey('flock.id'), nullable=False)
    date = db.Column(db.Date, nullable=False, default=date.today)
    record_type = db.Column(db.String(20), nullable=False) # 'TREATMENT', 'VACCINATION', 'ISOLATION', 'CHECKUP'
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(20), default='RESOLVED', nullable=False) # 'OPEN', 'RESOLVED'
    outcome = db.Column(db.String(100), nullable=True)

    # Medication
    medication_name = db.Column(db.String(100), nullable=True)
    inventory_item_id = db.Column(db.Integer, db.ForeignKey('inventory_item.id'), nullable=True)
    quantity_used = db.Column(db.Float, default=0.0)
    cost = db.Column(db.Float, default=0.0)
    dosage = db.Column(db.String(50), nullable=True)

    # Isolation
    birds_affected = db.Column(db.Integer, nullable=True)

    def days_until(self, today=None):
        return (self.date - (today or date.today())).days

# --- Helpers ---

def parse_date(value, default=None):
    if not value:
        return default
    return datetime.strptime(value, '%Y-%m-%d').date()

def form_float(name, default=0.0):
    val = request.form.get(name)
    return float(val) if val not in (None, '') else default

def form_int(name, default=0):
    val = request.form.get(name)
    return int(float(val)) if val not in (None, '') else default

def iso(value):
    return value.isoformat() if hasattr(value, 'isoformat') else value

def render_json(**payload):
    payload['messages'] = [{'category': c, 'message': m} for c, m in get_flashed_messages(with_categories=True)]
    return jsonify(payload)

def get_analyst():
    return current_app.extensions['flock_analyst']

def generate_batch_id(house, start_date):
    n = Flock.query.filter_by(house_id=house.id).count() + 1
    return f"{house.name}_{start_date.strftime('%y%m%d')}_Batch{n}"

def apply_transaction(item, type_, qty, when=None, notes=None):
    when = when or date.today()
    if type_ in DEBIT_TYPES:
        item.current_stock = (item.current_stock or 0) - qty
    else: # Purchase, Adjustment, Production
        item.current_stock = (item.current_stock or 0) + qty
    item.last_updated = when

    t = InventoryTransaction(item=item, transaction_type=type_, quantity=qty, transaction_date=when, notes=notes)
    db.session.add(t)
    app.logger.info("Inventory %s: %s %s %s (%s)", type_, qty, item.unit, item.name, notes or '')
    return t

def revert_transaction(t):
    item = t.item
    if not item: return
    if t.transaction_type in DEBIT_TYPES:
        item.current_stock += t.quantity
    else:
        item.current_stock -= t.quantity

def feed_deduction_amount(item, feed_kg):
    """Feed is captured in Kg; stock kept in bags is converted at FEED_BAG_KG per bag."""
    if 'bag' in (item.unit or '').lower():
        return feed_kg / current_app.config['FEED_BAG_KG']
    return feed_kg

def find_egg_item():
    item = InventoryItem.query.filter_by(name=EGG_ITEM_NAME).first()
    if item:
        return item
    for candidate in InventoryItem.query.filter_by(category='Other').order_by(InventoryItem.id).all():
        if 'egg' in candidate.name.lower():
            return candidate
    return None

def credit_eggs(flock, saleable, when):
    item = find_egg_item()
    if not item:
        item = InventoryItem(
            name=EGG_ITEM_NAME, category='Other', unit='units', current_stock=0.0,
            min_stock_level=100, cost_per_unit=current_app.config['EGG_UNIT_VALUE'],
            notes='Auto-created from daily production logs.'
        )
        db.session.add(item)
    apply_transaction(item, 'Production', saleable, when, notes=f'Daily Log: {flock.batch_id}')
    return item

def deduct_health_stock(record, previous_status=None):
    # Stock only moves when a record becomes RESOLVED
    if record.status != 'RESOLVED' or previous_status == 'RESOLVED':
        return
    if not record.inventory_item_id or not record.quantity_used:
        return
    item = db.session.get(InventoryItem, record.inventory_item_id)
    if not item:
        return
    # Floor at 0; the ledger records only what actually left the store
    used = min(record.quantity_used, max(0.0, item.current_stock or 0))
    if used > 0:
        apply_transaction(item, 'Usage', used, record.date, notes=f'Health: {record.title}')

def row_to_json(row):
    return {k: iso(v) for k, v in row.items() if k != 'log'}

def flock_to_dict(f):
    return {
        'id': f.id,
        'house': f.house.name if f.house else None,
        'batch_id': f.batch_id,
        'name': f.name,
        'bird_type': f.bird_type,
        'production_stage': f.production_stage,
        'breed': f.breed,
        'source': f.source,
        'start_date': iso(f.start_date),
        'initial_age_days': f.initial_age_days,
        'initial_count': f.initial_count,
        'initial_cost': f.initial_cost,
        'current_count': f.current_count,
        'total_sold': f.total_sold,
        'status': f.status,
        'age_days': f.age_days,
        'log_count': len(f.logs),
    }

def log_to_dict(log):
    return {
        'id': log.id,
        'day': log.day,
        'date': iso(log.date),
        'mortality': log.mortality,
        'mortality_reason': log.mortality_reason,
        'mortality_image': url_for('uploaded_file', filename=log.mortality_image) if log.mortality_image else None,
        'feed_consumed_kg': log.feed_consumed_kg,
        'water_consumed_l': log.water_consumed_l,
        'avg_weight_g': log.avg_weight_g,
        'egg_production': log.egg_production,
        'egg_details': log.egg_details,
        'notes': log.notes,
    }

def item_to_dict(item):
    return {
        'id': item.id,
        'name': item.name,
        'category': item.category,
        'unit': item.unit,
        'current_stock': round_safe(item.current_stock),
        'min_stock_level': item.min_stock_level,
        'cost_per_unit': item.cost_per_unit,
        'target_bird_type': item.target_bird_type,
        'location': item.location,
        'notes': item.notes,
        'last_updated': iso(item.last_updated),
        'is_low_stock': item.is_low_stock,
    }

def transaction_to_dict(t):
    return {
        'id': t.id,
        'item': t.item.name if t.item else None,
        'inventory_item_id': t.inventory_item_id,
        'transaction_type': t.transaction_type,
        'quantity': t.quantity,
        'transaction_date': iso(t.transaction_date),
        'notes': t.notes,
    }

def record_to_dict(r, today=None):
    return {
        'id': r.id,
        'flock_id': r.flock_id,
        'flock_name': r.flock.name if r.flock else None,
        'date': iso(r.date),
        'record_type': r.record_type,
        'title': r.title,
        'description': r.description,
        'status': r.status,
        'outcome': r.outcome,
        'medication_name': r.medication_name,
        'inventory_item_id': r.inventory_item_id,
        'quantity_used': r.quantity_used,
        'cost': r.cost,
        'dosage': r.dosage,
        'birds_affected': r.birds_affected,
        'days_until': r.days_until(today),
    }

# --- Routes ---

@app.route('/uploads/<filename>')
def uploaded_file(filename):
    return send_from_directory(app.config['UPLOAD_FOLDER'], filename)

@app.route('/')
def index():
    flocks = Flock.query.all()
    active = [f for f in flocks if f.status == 'Active']

    recent = []
    for f in active:
        if f.logs:
            last = f.logs[-1]
            recent.append({
                'flock': f.name,
                'date': iso(last.date),
                'day': last.day,
                'summary': f"Mortality: {last.mortality}, Feed: {last.feed_consumed_kg}kg",
            })
    recent.sort(key=lambda r: r['date'], reverse=True)

    low_stock = [item_to_dict(i) for i in InventoryItem.query.order_by(InventoryItem.name).all() if i.is_low_stock]

    return render_json(
        metrics=dashboard_metrics(flocks),
        egg_trend=egg_production_trend(flocks),
        low_stock=low_stock,
        recent_logs=recent,
    )

@app.route('/api/metrics')
def get_metrics_list():
    return jsonify(METRICS_REGISTRY)

# --- Flock Routes ---

@app.route('/flocks', methods=['GET', 'POST'])
def manage_flocks():
    if request.method == 'POST':
        house_name = (request.form.get('house_name') or '').strip()
        name = (request.form.get('name') or '').strip()
        bird_type = request.form.get('bird_type') or 'Layer'

        if not house_name or not name:
            flash('Error: House and flock name are required.', 'danger')
            return redirect(url_for('manage_flocks'))
        if bird_type not in BIRD_TYPES:
            flash(f'Error: Unknown bird type {bird_type}.', 'danger')
            return redirect(url_for('manage_flocks'))

        try:
            start_date = parse_date(request.form.get('start_date'), date.today())
            initial_count = form_int('initial_count')
            initial_age_days = form_int('initial_age_days')
            initial_cost = form_float('initial_cost')
        except ValueError:
            flash('Error: Invalid date or number.', 'danger')
            return redirect(url_for('manage_flocks'))

        if initial_count < 0 or initial_age_days < 0:
            flash('Error: Counts cannot be negative.', 'danger')
            return redirect(url_for('manage_flocks'))

        house = House.query.filter_by(name=house_name).first()
        if not house:
            house = House(name=house_name)
            db.session.add(house)
            db.session.flush()

        batch_id = (request.form.get('batch_id') or '').strip() or generate_batch_id(house, start_date)
        if Flock.query.filter_by(batch_id=batch_id).first():
            db.session.rollback()
            flash(f'Error: Batch {batch_id} already exists.', 'danger')
            return redirect(url_for('manage_flocks'))

        flock = Flock(
            house_id=house.id,
            batch_id=batch_id,
            name=name,
            bird_type=bird_type,
            production_stage=request.form.get('production_stage') or None,
            breed=request.form.get('breed'),
            source=request.form.get('source'),
            start_date=start_date,
            initial_age_days=initial_age_days,
            initial_count=initial_count,
            initial_cost=initial_cost,
            current_count=initial_count,
            status=request.form.get('status') if request.form.get('status') in FLOCK_STATUSES else 'Active',
        )
        db.session.add(flock)
        db.session.commit()
        app.logger.info("Flock %s created with %s birds", batch_id, initial_count)

        flash('Flock created successfully!', 'success')
        return redirect(url_for('manage_flocks'))

    flocks = Flock.query.order_by(Flock.start_date.desc()).all()
    return render_json(flocks=[flock_to_dict(f) for f in flocks])

@app.route('/flock/<int:id>')
def view_flock(id):
    flock = Flock.query.get_or_404(id)

    overview = derive_flock_overview_metrics(flock, flock.logs)
    latest = overview[-1] if overview else None

    return render_json(
        flock=flock_to_dict(flock),
        latest=row_to_json(latest) if latest else None,
        overview=[row_to_json(r) for r in newest_first(overview)],
        logs=[log_to_dict(l) for l in newest_first(flock.logs)],
    )

@app.route('/flock/<int:id>/edit', methods=['POST'])
def edit_flock(id):
    flock = Flock.query.get_or_404(id)

    try:
        if request.form.get('start_date'):
            flock.start_date = parse_date(request.form.get('start_date'))
        if request.form.get('initial_count'):
            flock.initial_count = form_int('initial_count')
        if request.form.get('current_count'):
            flock.current_count = form_int('current_count')
        if request.form.get('initial_age_days'):
            flock.initial_age_days = form_int('initial_age_days')
        if request.form.get('initial_cost'):
            flock.initial_cost = form_float('initial_cost')
    except ValueError:
        db.session.rollback()
        flash('Error: Invalid date or number.', 'danger')
        return redirect(url_for('view_flock', id=id))

    for field in ('name', 'breed', 'source'):
        if request.form.get(field):
            setattr(flock, field, request.form.get(field))
    if request.form.get('production_stage') in PRODUCTION_STAGES:
        flock.production_stage = request.form.get('production_stage')

    db.session.commit()
    flash('Flock details updated.', 'success')
    return redirect(url_for('view_flock', id=id))

@app.route('/flock/<int:id>/status', methods=['POST'])
def update_flock_status(id):
    flock = Flock.query.get_or_404(id)
    status = request.form.get('status')

    if status not in FLOCK_STATUSES:
        flash(f'Error: Unknown status {status}.', 'danger')
        return redirect(url_for('view_flock', id=id))

    flock.status = status
    if status == 'Harvested' and request.form.get('clear_count') in ('on', '1', 'true'):
        flock.current_count = 0

    db.session.commit()
    app.logger.info("Flock %s status changed to %s", flock.batch_id, status)
    flash(f'Flock status set to {status}.', 'success')
    return redirect(url_for('view_flock', id=id))

@app.route('/flock/<int:id>/delete', methods=['POST'])
def delete_flock(id):
    flock = Flock.query.get_or_404(id)
    db.session.delete(flock)
    db.session.commit()
    flash('Flock deleted.', 'info')
    return redirect(url_for('manage_flocks'))

@app.route('/flock/<int:id>/daily_log', methods=['POST'])
def daily_log(id):
    flock = Flock.query.get_or_404(id)

    try:
        log_date = parse_date(request.form.get('date'), date.today())
        mortality = form_int('mortality')
        feed_kg = form_float('feed_consumed_kg')
        water_l = form_float('water_consumed_l')
        weight_g = form_float('avg_weight_g')
        eggs = form_int('egg_production')
        damaged = form_int('eggs_damaged')
    except ValueError:
        flash('Error: Invalid date or number.', 'danger')
        return redirect(url_for('view_flock', id=id))

    if min(mortality, feed_kg, water_l, weight_g, eggs, damaged) < 0:
        flash('Error: Values cannot be negative.', 'danger')
        return redirect(url_for('view_flock', id=id))

    if DailyLog.query.filter_by(flock_id=flock.id, date=log_date).first():
        flash(f'Error: A log for {log_date.isoformat()} already exists.', 'danger')
        return redirect(url_for('view_flock', id=id))

    # --- Inventory: Feed ---
    feed_item_id = request.form.get('selected_feed_id')
    if feed_item_id and feed_kg > 0:
        feed_item = db.session.get(InventoryItem, int(feed_item_id)) if feed_item_id.isdigit() else None
        if feed_item:
            needed = feed_deduction_amount(feed_item, feed_kg)
            if (feed_item.current_stock or 0) < needed:
                app.logger.warning("Daily log for %s rejected: insufficient %s", flock.batch_id, feed_item.name)
                flash(f'Insufficient stock for {feed_item.name}. Available: {feed_item.current_stock} {feed_item.unit} '
                      f'(Need {needed:.2f} {feed_item.unit})', 'danger')
                return redirect(url_for('view_flock', id=id))
            apply_transaction(feed_item, 'Usage', needed, log_date, notes=f'Feed for {flock.batch_id}')

    # --- Inventory: Eggs ---
    if flock.is_layer and eggs > 0:
        saleable = max(0, eggs - damaged)
        if saleable > 0:
            credit_eggs(flock, saleable, log_date)

    log = DailyLog(
        flock_id=flock.id,
        day=len(flock.logs) + 1,
        date=log_date,
        mortality=mortality,
        mortality_reason=request.form.get('mortality_reason'),
        feed_consumed_kg=feed_kg,
        water_consumed_l=water_l,
        avg_weight_g=weight_g,
        egg_production=eggs if flock.is_layer else None,
        egg_details={
            'morning': {'good': {'large': 0, 'medium': 0, 'small': 0}, 'damaged': 0},
            'afternoon': {'good': {'large': 0, 'medium': 0, 'small': 0}, 'damaged': damaged},
        } if flock.is_layer else None,
        notes=request.form.get('notes'),
    )

    photo = request.files.get('mortality_image')
    if photo and photo.filename:
        filename = secure_filename(f"{flock.batch_id}_{log_date.strftime('%Y%m%d')}_{photo.filename}")
        photo.save(os.path.join(current_app.config['UPLOAD_FOLDER'], filename))
        log.mortality_image = filename

    db.session.add(log)
    flock.current_count = max(0, (flock.current_count or 0) - mortality)

    db.session.commit()
    flash('Daily Log submitted successfully!', 'success')
    return redirect(url_for('view_flock', id=id))

@app.route('/flock/<int:id>/production')
def flock_production(id):
    flock = Flock.query.get_or_404(id)

    enriched = derive_enriched_logs(flock, flock.logs)
    summary = summarize(enriched)

    egg_item = find_egg_item()
    stock = None
    if egg_item:
        stock = {
            'quantity': round_safe(egg_item.current_stock),
            'estimated_value': round_safe(egg_item.current_stock * (egg_item.cost_per_unit or 0)),
        }

    return render_json(
        flock=flock_to_dict(flock),
        summary=summary,
        inventory=stock,
        logs=[row_to_json(r) for r in newest_first(enriched)],
    )

def default_chart_metric(flock, mode):
    if not flock.is_layer:
        return 'avg_weight_g'
    # Period groups carry egg totals, not hen-day rates
    return 'hen_day_pct' if mode == 'daily' else 'egg_production'

@app.route('/api/chart_data/<int:flock_id>')
def get_chart_data(flock_id):
    flock = Flock.query.get_or_404(flock_id)

    mode = request.args.get('mode', 'daily') # 'daily', 'weekly', 'monthly'
    metric = request.args.get('metric') or default_chart_metric(flock, mode)

    if mode not in ('daily', 'weekly', 'monthly'):
        return jsonify({'error': f'Unknown mode {mode}'}), 400
    if metric not in METRICS_REGISTRY:
        return jsonify({'error': f'Unknown metric {metric}'}), 400

    overview = derive_flock_overview_metrics(flock, flock.logs)
    if mode == 'daily':
        # Same ordering on both sides, so rows line up by position
        for row, enriched in zip(overview, derive_enriched_logs(flock, flock.logs)):
            for key in ('hen_housed_pct', 'rejected', 'saleable', 'quality_pct'):
                row[key] = enriched[key]
    points = aggregate_trend(flock, overview, mode)

    if points and metric not in points[0]:
        return jsonify({'error': f'Metric {metric} is not available in {mode} mode'}), 400

    values = [round_safe(p[metric]) for p in points]
    period, average = chart_moving_average(values)

    return jsonify({
        'flock_id': flock.batch_id,
        'mode': mode,
        'metric': metric,
        'label': METRICS_REGISTRY[metric]['label'],
        'unit': METRICS_REGISTRY[metric]['unit'],
        'labels': [p['label'] for p in points],
        'dates': [iso(p['date']) for p in points],
        'values': values,
        'moving_average': {'period': period, 'values': [round_safe(v) if v is not None else None for v in average]},
    })

# --- Import / Export ---

IMPORT_COLUMNS = {
    'Date': 'date',
    'Mortality': 'mortality',
    'Mortality Reason': 'mortality_reason',
    'Feed (Kg)': 'feed_consumed_kg',
    'Water (L)': 'water_consumed_l',
    'Avg Weight (g)': 'avg_weight_g',
    'Eggs': 'egg_production',
    'Damaged Eggs': 'eggs_damaged',
    'Notes': 'notes',
}

def process_import(flock, file):
    """
    Appends historical logs from a CSV/Excel sheet after the flock's existing days.
    Returns (added, skipped). Imported history has no inventory side effects.
    """
    if file.filename.lower().endswith('.csv'):
        df = pd.read_csv(file)
    else:
        df = pd.read_excel(file)

    df = df.rename(columns=lambda c: IMPORT_COLUMNS.get(str(c).strip(), str(c).strip()))
    if 'date' not in df.columns:
        raise ValueError("Missing 'Date' column")

    df['date'] = pd.to_datetime(df['date'], errors='coerce')
    for col in ('mortality', 'feed_consumed_kg', 'water_consumed_l', 'avg_weight_g', 'egg_production', 'eggs_damaged'):
        if col in df.columns:
            df[col] = pd.to_numeric(df[col], errors='coerce').fillna(0).clip(lower=0)
        else:
            df[col] = 0
    df = df.sort_values('date')

    existing = {l.date for l in flock.logs}
    next_day = len(flock.logs) + 1
    added = skipped = 0

    for _, row in df.iterrows():
        if pd.isna(row['date']):
            skipped += 1
            continue
        log_date = row['date'].date()
        if log_date in existing:
            skipped += 1
            continue

        eggs = int(row['egg_production'])
        damaged = int(row['eggs_damaged'])
        notes = row.get('notes')
        reason = row.get('mortality_reason')

        log = DailyLog(
            flock_id=flock.id,
            day=next_day,
            date=log_date,
            mortality=int(row['mortality']),
            mortality_reason=reason if isinstance(reason, str) else None,
            feed_consumed_kg=float(row['feed_consumed_kg']),
            water_consumed_l=float(row['water_consumed_l']),
            avg_weight_g=float(row['avg_weight_g']),
            egg_production=eggs if flock.is_layer else None,
            egg_details={
                'morning': {'good': {'large': 0, 'medium': 0, 'small': 0}, 'damaged': 0},
                'afternoon': {'good': {'large': 0, 'medium': 0, 'small': 0}, 'damaged': damaged},
            } if flock.is_layer else None,
            notes=notes if isinstance(notes, str) else None,
        )
        db.session.add(log)
        flock.current_count = max(0, (flock.current_count or 0) - log.mortality)

        existing.add(log_date)
        next_day += 1
        added += 1

    return added, skipped

@app.route('/flock/<int:id>/import', methods=['POST'])
def import_logs(id):
    flock = Flock.query.get_or_404(id)
    file = request.files.get('file')

    if not file or not file.filename:
        flash('No file selected.', 'danger')
        return redirect(url_for('view_flock', id=id))

    try:
        added, skipped = process_import(flock, file)
    except ValueError as e:
        db.session.rollback()
        flash(f'Import failed: {e}', 'danger')
        return redirect(url_for('view_flock', id=id))

    db.session.commit()
    app.logger.info("Imported %s logs into %s (%s skipped)", added, flock.batch_id, skipped)
    flash(f'Imported {added} logs ({skipped} skipped).', 'success')
    return redirect(url_for('view_flock', id=id))

@app.route('/flock/<int:id>/export')
def export_flock(id):
    flock = Flock.query.get_or_404(id)
    enriched = derive_enriched_logs(flock, flock.logs)
    summary = summarize(enriched)

    wb = Workbook()
    ws = wb.active
    ws.title = "Production"

    headers = ["Day", "Date", "Birds Alive", "Mortality", "Eggs", "Rejected", "Saleable",
               "Hen-Day %", "Hen-Housed %", "Quality %", "Feed (Kg)", "Water (L)", "Avg Weight (g)"]
    ws.append(headers)

    header_font = Font(bold=True, color="FFFFFF")
    header_fill = PatternFill(start_color="4F81BD", end_color="4F81BD", fill_type="solid")
    for cell in ws[1]:
        cell.font = header_font
        cell.fill = header_fill
        cell.alignment = Alignment(horizontal="center", wrap_text=True)

    for d in enriched:
        ws.append([
            d['day'], iso(d['date']), d['birds_alive'], d['mortality'], d['egg_production'],
            d['rejected'], d['saleable'], round_safe(d['hen_day_pct']), round_safe(d['hen_housed_pct']),
            round_safe(d['quality_pct']), d['feed_consumed_kg'], d['water_consumed_l'], d['avg_weight_g'],
        ])

    ws_sum = wb.create_sheet("Summary")
    ws_sum.append(["Flock", flock.batch_id])
    ws_sum.append(["Initial Count", flock.initial_count])
    ws_sum.append(["Current Count", flock.current_count])
    ws_sum.append(["Total Production", summary['total_production']])
    ws_sum.append(["Avg Hen-Day %", round_safe(summary['avg_hen_day_pct'])])
    ws_sum.append(["Avg Hen-Housed %", round_safe(summary['avg_hen_housed_pct'])])
    ws_sum.append(["Max Daily Production", summary['max_daily_production']])
    ws_sum.column_dimensions['A'].width = 22

    output = io.BytesIO()
    wb.save(output)
    output.seek(0)

    return send_file(
        output,
        as_attachment=True,
        download_name=f"{flock.batch_id}_production.xlsx",
        mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
    )

@app.route('/export/backup')
def export_backup():
    flocks = []
    for f in Flock.query.order_by(Flock.id).all():
        d = flock_to_dict(f)
        d['logs'] = [log_to_dict(l) for l in f.logs]
        d['health_records'] = [record_to_dict(r) for r in f.health_records]
        flocks.append(d)

    inventory = []
    for item in InventoryItem.query.order_by(InventoryItem.id).all():
        d = item_to_dict(item)
        d['transactions'] = [transaction_to_dict(t) for t in item.transactions]
        inventory.append(d)

    today = date.today().isoformat()
    body = json.dumps({'exported_at': today, 'flocks': flocks, 'inventory': inventory}, indent=2)
    return Response(body, mimetype='application/json',
                    headers={'Content-Disposition': f'attachment; filename=farm_backup_{today}.json'})

# --- Analysis Routes ---

@app.route('/flock/<int:id>/analysis', methods=['POST'])
def flock_analysis(id):
    flock = Flock.query.get_or_404(id)
    return jsonify(get_analyst().analyze_flock_performance(flock, flock.logs))

@app.route('/diagnose', methods=['POST'])
def diagnose_bird():
    image = request.files.get('image')
    if image and image.filename:
        image_b64 = base64.b64encode(image.read()).decode('ascii')
    else:
        image_b64 = request.form.get('image_b64')

    if not image_b64:
        return jsonify({'error': 'No image provided'}), 400

    return jsonify(get_analyst().diagnose_bird_health(image_b64))

# --- Inventory Routes ---

MOVEMENT_KEYS = {'Purchase': 'purchase', 'Usage': 'usage', 'Waste': 'waste'}

def month_to_date_movements(items, today):
    """Purchased, used and wasted quantity per item since the 1st of the month."""
    first = today.replace(day=1)
    totals = {item.id: dict.fromkeys(MOVEMENT_KEYS.values(), 0.0) for item in items}

    rows = InventoryTransaction.query.filter(
        InventoryTransaction.transaction_date >= first,
        InventoryTransaction.transaction_type.in_(list(MOVEMENT_KEYS)),
    ).all()
    for t in rows:
        if t.inventory_item_id in totals:
            totals[t.inventory_item_id][MOVEMENT_KEYS[t.transaction_type]] += t.quantity

    return [dict(name=item.name, **{k: round(v, 2) for k, v in totals[item.id].items()}) for item in items]

@app.route('/inventory')
def inventory():
    items = InventoryItem.query.order_by(InventoryItem.name).all()
    transactions = InventoryTransaction.query.order_by(InventoryTransaction.transaction_date.desc(), InventoryTransaction.id.desc()).limit(50).all()

    today = date.today()

    return render_json(
        items=[item_to_dict(i) for i in items],
        transactions=[transaction_to_dict(t) for t in transactions],
        summary=month_to_date_movements(items, today),
        current_month=today.strftime('%B %Y'),
    )

@app.route('/inventory/add', methods=['POST'])
def add_inventory_item():
    name = (request.form.get('name') or '').strip()
    category = request.form.get('category')
    unit = request.form.get('unit') or 'units'

    if not name or category not in INVENTORY_CATEGORIES:
        flash('Error: Name and a valid category are required.', 'danger')
        return redirect(url_for('inventory'))

    try:
        stock = form_float('current_stock')
        min_stock = form_float('min_stock_level')
        cost = form_float('cost_per_unit')
    except ValueError:
        flash('Error: Invalid number.', 'danger')
        return redirect(url_for('inventory'))

    item = InventoryItem(
        name=name, category=category, unit=unit, current_stock=0.0,
        min_stock_level=min_stock, cost_per_unit=cost,
        target_bird_type=request.form.get('target_bird_type') or None,
        location=request.form.get('location'), notes=request.form.get('notes'),
    )
    db.session.add(item)

    if stock > 0:
        apply_transaction(item, 'Purchase', stock, notes='Initial Stock')

    db.session.commit()
    flash(f'Added {name} to inventory.', 'success')
    return redirect(url_for('inventory'))

@app.route('/inventory/transaction', methods=['POST'])
def inventory_transaction():
    type_ = request.form.get('transaction_type')
    try:
        item_id = int(request.form.get('inventory_item_id') or 0)
        qty = form_float('quantity')
        date_val = parse_date(request.form.get('transaction_date'), date.today())
    except ValueError:
        flash('Error: Invalid date or number.', 'danger')
        return redirect(url_for('inventory'))

    if type_ not in TRANSACTION_TYPES:
        flash(f'Error: Unknown transaction type {type_}.', 'danger')
        return redirect(url_for('inventory'))

    if qty <= 0:
        flash('Quantity must be positive.', 'danger')
        return redirect(url_for('inventory'))

    item = InventoryItem.query.get_or_404(item_id)
    apply_transaction(item, type_, qty, date_val, notes=request.form.get('notes'))

    if item.current_stock < 0:
        flash(f'Warning: Stock for {item.name} went negative.', 'warning')

    db.session.commit()
    flash('Transaction recorded.', 'success')
    return redirect(url_for('inventory'))

@app.route('/inventory/edit/<int:id>', methods=['POST'])
def edit_inventory_item(id):
    item = InventoryItem.query.get_or_404(id)

    if request.form.get('delete') == '1':
        db.session.delete(item)
        db.session.commit()
        flash('Item deleted.', 'info')
        return redirect(url_for('inventory'))

    try:
        item.min_stock_level = form_float('min_stock_level', item.min_stock_level)
        item.cost_per_unit = form_float('cost_per_unit', item.cost_per_unit)
    except ValueError:
        db.session.rollback()
        flash('Error: Invalid number.', 'danger')
        return redirect(url_for('inventory'))

    item.name = request.form.get('name') or item.name
    if request.form.get('category') in INVENTORY_CATEGORIES:
        item.category = request.form.get('category')
    item.unit = request.form.get('unit') or item.unit
    item.location = request.form.get('location', item.location)
    item.notes = request.form.get('notes', item.notes)

    db.session.commit()
    flash('Item updated.', 'success')
    return redirect(url_for('inventory'))

@app.route('/inventory/transaction/delete/<int:id>', methods=['POST'])
def delete_inventory_transaction(id):
    t = InventoryTransaction.query.get_or_404(id)

    revert_transaction(t)

    db.session.delete(t)
    db.session.commit()
    flash("Transaction deleted. Stock reverted.", "info")
    return redirect(url_for('inventory'))

@app.route('/inventory/transaction/edit/<int:id>', methods=['POST'])
def edit_inventory_transaction(id):
    t = InventoryTransaction.query.get_or_404(id)

    try:
        new_qty = form_float('quantity')
        new_date = parse_date(request.form.get('transaction_date'), t.transaction_date)
    except ValueError:
        flash("Error: Invalid date or number.", "danger")
        return redirect(url_for('inventory'))

    if new_qty <= 0:
        flash("Quantity must be positive.", "danger")
        return redirect(url_for('inventory'))

    revert_transaction(t)

    t.quantity = new_qty
    t.transaction_date = new_date
    t.notes = request.form.get('notes', t.notes)

    # Apply New Effect
    if t.item:
        if t.transaction_type in DEBIT_TYPES:
            t.item.current_stock -= new_qty
        else:
            t.item.current_stock += new_qty

    db.session.commit()
    flash("Transaction updated.", "success")
    return redirect(url_for('inventory'))

# --- Health Routes ---

@app.route('/health')
def health():
    today = date.today()
    search = (request.args.get('q') or '').strip().lower()
    type_filter = request.args.get('type', 'ALL')

    records = HealthRecord.query.join(Flock).order_by(HealthRecord.date.desc(), HealthRecord.id.desc()).all()

    filtered = [
        r for r in records
        if (not search or search in r.title.lower() or search in r.flock.name.lower())
        and (type_filter == 'ALL' or r.record_type == type_filter)
    ]

    vaccinations = [r for r in records if r.record_type == 'VACCINATION']
    upcoming = sorted((r for r in vaccinations if r.status != 'RESOLVED'), key=lambda r: r.date)
    past = [r for r in vaccinations if r.status == 'RESOLVED'] # already newest first

    return render_json(
        records=[record_to_dict(r, today) for r in filtered],
        upcoming_vaccinations=[record_to_dict(r, today) for r in upcoming],
        past_vaccinations=[record_to_dict(r, today) for r in past],
    )

def _record_from_form(record):
    """
    Fills a HealthRecord from the submitted form, keeping current values for
    fields the form leaves out. Raises ValueError on bad input.
    """
    form = request.form

    flock_id = int(form.get('flock_id') or record.flock_id or 0)
    if not db.session.get(Flock, flock_id):
        raise ValueError('Unknown flock')

    record_type = form.get('record_type') or record.record_type
    if record_type not in RECORD_TYPES:
        raise ValueError(f'Unknown record type {record_type}')

    title = (form.get('title') or record.title or '').strip()
    if not title:
        raise ValueError('Title is required')

    status = form.get('status') or record.status
    if status not in RECORD_STATUSES:
        raise ValueError(f'Unknown status {status}')

    record.flock_id = flock_id
    record.record_type = record_type
    record.title = title
    record.status = status
    record.date = parse_date(form.get('date'), record.date or date.today())

    for field in ('description', 'outcome', 'medication_name', 'dosage'):
        if field in form:
            setattr(record, field, form.get(field) or None)
    if 'inventory_item_id' in form:
        record.inventory_item_id = int(form['inventory_item_id']) if form['inventory_item_id'] else None
    if 'quantity_used' in form:
        record.quantity_used = form_float('quantity_used')
    if 'cost' in form:
        record.cost = form_float('cost')
    if 'birds_affected' in form:
        record.birds_affected = form_int('birds_affected', None)
    return record

@app.route('/health/records', methods=['POST'])
def add_health_record():
    record = HealthRecord(record_type='CHECKUP', status='RESOLVED', date=date.today())
    try:
        _record_from_form(record)
    except ValueError as e:
        flash(f'Error: {e}', 'danger')
        return redirect(url_for('health'))

    db.session.add(record)
    deduct_health_stock(record)
    db.session.commit()
    flash('Health record saved.', 'success')
    return redirect(url_for('health'))

@app.route('/health/schedule', methods=['POST'])
def schedule_vaccination():
    record = HealthRecord(record_type='VACCINATION', status='OPEN', date=date.today() + timedelta(days=1))
    try:
        _record_from_form(record)
    except ValueError as e:
        flash(f'Error: {e}', 'danger')
        return redirect(url_for('health'))

    db.session.add(record)
    deduct_health_stock(record)
    db.session.commit()
    flash(f'Vaccination scheduled for {record.date.isoformat()}.', 'success')
    return redirect(url_for('health'))

@app.route('/health/records/<int:id>/edit', methods=['POST'])
def edit_health_record(id):
    record = HealthRecord.query.get_or_404(id)
    previous_status = record.status

    try:
        _record_from_form(record)
    except ValueError as e:
        db.session.rollback()
        flash(f'Error: {e}', 'danger')
        return redirect(url_for('health'))

    deduct_health_stock(record, previous_status)
    db.session.commit()
    flash('Health record updated.', 'success')
    return redirect(url_for('health'))

@app.route('/health/records/<int:id>/complete', methods=['POST'])
def complete_vaccination(id):
    record = HealthRecord.query.get_or_404(id)
    if record.record_type != 'VACCINATION':
        flash(f'Error: {record.title} is not a vaccination.', 'danger')
        return redirect(url_for('health'))
    previous_status = record.status

    try:
        record.date = parse_date(request.form.get('date'), date.today())
        if request.form.get('inventory_item_id'):
            record.inventory_item_id = int(request.form.get('inventory_item_id'))
        if request.form.get('quantity_used'):
            record.quantity_used = form_float('quantity_used')
    except ValueError:
        db.session.rollback()
        flash('Error: Invalid date or number.', 'danger')
        return redirect(url_for('health'))

    record.status = 'RESOLVED'
    record.outcome = request.form.get('outcome', record.outcome)

    deduct_health_stock(record, previous_status)
    db.session.commit()
    flash(f'{record.title} marked as completed.', 'success')
    return redirect(url_for('health'))

@app.route('/health/records/<int:id>/delete', methods=['POST'])
def delete_health_record(id):
    record = HealthRecord.query.get_or_404(id)
    db.session.delete(record)
    db.session.commit()
    flash('Health record deleted.', 'info')
    return redirect(url_for('health'))

@app.route('/health/calendar')
def vaccination_calendar():
    today = date.today()

    try:
        year = int(request.args.get('year', today.year))
        month = int(request.args.get('month', today.month))
        if not 1 <= month <= 12:
            raise ValueError(month)
    except ValueError:
        year = today.year
        month = today.month

    cal = calendar.Calendar(firstweekday=6) # Sunday first
    month_days = cal.monthdatescalendar(year, month)

    prev_month = month - 1 if month > 1 else 12
    prev_year = year if month > 1 else year - 1
    next_month = month + 1 if month < 12 else 1
    next_year = year if month < 12 else year + 1

    grid_start = month_days[0][0]
    grid_end = month_days[-1][-1]

    vaccines = HealthRecord.query.filter(
        HealthRecord.record_type == 'VACCINATION',
        HealthRecord.date >= grid_start,
        HealthRecord.date <= grid_end,
    ).order_by(HealthRecord.date, HealthRecord.id).all()

    events_by_date = {}
    for v in vaccines:
        events_by_date.setdefault(v.date, []).append(v)

    weeks = []
    for week in month_days:
        weeks.append([{
            'date': d.isoformat(),
            'day': d.day,
            'in_month': d.month == month,
            'is_today': d == today,
            'events': [record_to_dict(v, today) for v in events_by_date.get(d, [])],
        } for d in week])

    return render_json(
        year=year, month=month,
        month_name=calendar.month_name[month],
        weeks=weeks,
        prev={'year': prev_year, 'month': prev_month},
        next={'year': next_year, 'month': next_month},
    )

@app.route('/health/analysis', methods=['POST'])
def health_analysis():
    records = HealthRecord.query.order_by(HealthRecord.date.desc()).all()
    flocks = Flock.query.all()
    return jsonify(get_analyst().analyze_health_trends(records, flocks))


if __name__ == '__main__':
    app.run(debug=True)
