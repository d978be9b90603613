from sqlalchemy.orm import Session

from boldvpn.models.sequence import NamedSequence

LOCATION_SEQUENCE_PREFIX = "vpn_server_location"


def _next_sequence_value(db: Session, key: str, start_value: int = 1) -> int:
    sequence = (
        db.query(NamedSequence)
        .filter(NamedSequence.key == key)
        .with_for_update()
        .first()
    )
    if not sequence:
        sequence = NamedSequence(key=key, next_value=start_value)
        db.add(sequence)
        db.flush()
    value = sequence.next_value
    sequence.next_value = value + 1
    db.flush()
    return value


def next_location_number(db: Session, country_code: str | None) -> int:
    """Return the next per-country server number (US-1, US-2, ...).

    Servers without a country share the ``XX`` counter.
    """
    code = (country_code or "XX").strip().upper() or "XX"
    return _next_sequence_value(db, f"{LOCATION_SEQUENCE_PREFIX}:{code}")
