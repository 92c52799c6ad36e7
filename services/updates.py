"""Explicit partial-update records: only fields that were given are written."""
from dataclasses import dataclass, fields


class _Unset:
    def __repr__(self):
        return 'UNSET'

    def __bool__(self):
        return False


UNSET = _Unset()


class PartialUpdate:

    @classmethod
    def from_dict(cls, data, parsers=None):
        parsers = parsers or {}
        values = {}
        for f in fields(cls):
            if f.name in data:
                parse = parsers.get(f.name)
                values[f.name] = parse(data[f.name]) if parse and data[f.name] is not None else data[f.name]
        return cls(**values)

    def present(self):
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not UNSET}

    def is_empty(self):
        return not self.present()

    def apply(self, target):
        for name, value in self.present().items():
            setattr(target, name, value)
        return target


@dataclass
class ListingUpdate(PartialUpdate):
    food_type: object = UNSET
    quantity_kg: object = UNSET
    meal_equivalent: object = UNSET
    expiry_time: object = UNSET
    pickup_address: object = UNSET
    latitude: object = UNSET
    longitude: object = UNSET


@dataclass
class ClaimUpdate(PartialUpdate):
    pickup_scheduled_time: object = UNSET
    strategy_notes: object = UNSET
    status: object = UNSET
