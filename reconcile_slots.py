# reconcile_slots.py
# Repairs booked_count on every slot from the bookings that actually hold a place.
from app import create_app

app = create_app()
with app.app_context():
    changed = app.extensions["matching"].slots.recompute_all()
    if not changed:
        print("All slots consistent.")
    else:
        for slot_id, (before, after) in sorted(changed.items()):
            print(f"[FIXED] slot {slot_id}: booked_count {before} -> {after}")
