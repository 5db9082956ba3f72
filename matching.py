# matching.py
from dataclasses import dataclass
from datetime import timedelta

from compatibility import COMPATIBILITY
from geo import estimate_arrival, haversine_distance

DEFAULT_RADIUS_KM = 20.0


@dataclass(frozen=True)
class MatchCandidate:
    donor: object
    distance_km: float
    eta_minutes: int

    @property
    def donor_id(self):
        return self.donor.id

    def to_dict(self):
        return {
            "donor_id": self.donor.id,
            "name": self.donor.name,
            "blood_type": self.donor.blood_type.value,
            "reliability_score": self.donor.reliability_score,
            "distance_km": round(self.distance_km, 2),
            "eta_minutes": self.eta_minutes,
        }


def is_eligible(donor, now=None, min_days=None):
    if not donor.is_available:
        return False
    if min_days and donor.last_donation_at and now is not None:
        if now - donor.last_donation_at < timedelta(days=min_days):
            return False
    return True


def find_best_donors(request, donors, radius_km=DEFAULT_RADIUS_KM, max_results=None,
                     min_interval_days=None, now=None):
    """Rank ``donors`` for ``request``: nearest first, then most reliable, then lowest id.

    Donors without coordinates, of an incompatible or unknown blood type, or
    outside ``radius_km`` are left out. A request with no known location has
    no candidates.
    """
    if request.latitude is None or request.longitude is None:
        return []
    compatible_groups = COMPATIBILITY[request.blood_type]

    candidates = []
    for d in donors:
        if d.blood_type not in compatible_groups:
            continue
        if not is_eligible(d, now=now, min_days=min_interval_days):
            continue
        if d.latitude is None or d.longitude is None:
            continue
        dist = haversine_distance(request.latitude, request.longitude, d.latitude, d.longitude)
        if dist > radius_km:
            continue
        candidates.append(MatchCandidate(donor=d, distance_km=dist, eta_minutes=estimate_arrival(dist)))

    candidates.sort(key=lambda c: (c.distance_km, -c.donor.reliability_score, c.donor.id))
    if max_results:
        return candidates[:max_results]
    return candidates
