"""Transition tables for journeys, bids, rides and ride legs.

Every status change goes through :func:`transition`, so an illegal move is a
single code path that raises :class:`StateConflictError` before anything is
written.
"""
from . import models
from .errors import StateConflictError


JOURNEY_TRANSITIONS = {
    (models.JOURNEY_OPEN, "match"): models.JOURNEY_MATCHED,
    (models.JOURNEY_OPEN, "cancel"): models.JOURNEY_CANCELLED,
    (models.JOURNEY_MATCHED, "complete"): models.JOURNEY_COMPLETED,
    (models.JOURNEY_MATCHED, "cancel"): models.JOURNEY_CANCELLED,
}

BID_TRANSITIONS = {
    (models.BID_PENDING, "accept"): models.BID_ACCEPTED,
    (models.BID_PENDING, "reject"): models.BID_REJECTED,
    (models.BID_PENDING, "expire"): models.BID_EXPIRED,
}

RIDE_TRANSITIONS = {
    (models.RIDE_REQUESTED, "accept"): models.RIDE_ACCEPTED,
    (models.RIDE_ACCEPTED, "arrive"): models.RIDE_DRIVER_ARRIVED,
    (models.RIDE_DRIVER_ARRIVED, "start"): models.RIDE_ONGOING,
    # shared rides start when the first passenger boards
    (models.RIDE_ACCEPTED, "board"): models.RIDE_ONGOING,
    (models.RIDE_DRIVER_ARRIVED, "board"): models.RIDE_ONGOING,
    (models.RIDE_ONGOING, "complete"): models.RIDE_COMPLETED,
    (models.RIDE_REQUESTED, "cancel_by_passenger"): models.RIDE_CANCELLED_BY_PASSENGER,
    (models.RIDE_ACCEPTED, "cancel_by_passenger"): models.RIDE_CANCELLED_BY_PASSENGER,
    (models.RIDE_REQUESTED, "cancel_by_driver"): models.RIDE_CANCELLED_BY_DRIVER,
    (models.RIDE_ACCEPTED, "cancel_by_driver"): models.RIDE_CANCELLED_BY_DRIVER,
    (models.RIDE_DRIVER_ARRIVED, "passenger_no_show"): models.RIDE_PASSENGER_NO_SHOW,
    (models.RIDE_ACCEPTED, "driver_no_show"): models.RIDE_DRIVER_NO_SHOW,
}

LEG_TRANSITIONS = {
    (models.LEG_WAITING, "board"): models.LEG_ON_BOARD,
    (models.LEG_ON_BOARD, "drop_off"): models.LEG_DROPPED_OFF,
    (models.LEG_WAITING, "no_show"): models.LEG_NO_SHOW,
}

# leg target state -> action that reaches it
LEG_ACTIONS = {
    models.LEG_ON_BOARD: "board",
    models.LEG_DROPPED_OFF: "drop_off",
    models.LEG_NO_SHOW: "no_show",
}

_TABLES = {
    "journey": JOURNEY_TRANSITIONS,
    "bid": BID_TRANSITIONS,
    "ride": RIDE_TRANSITIONS,
    "leg": LEG_TRANSITIONS,
}


def can_transition(entity: str, state: str, action: str) -> bool:
    return (state, action) in _TABLES[entity]


def transition(entity: str, state: str, action: str) -> str:
    """Return the state reached by applying ``action`` to an ``entity`` in ``state``."""
    try:
        return _TABLES[entity][(state, action)]
    except KeyError:
        raise StateConflictError(f"Cannot {action.replace('_', ' ')} a {entity} that is {state}") from None
