from __future__ import annotations

import logging
import os
from collections import defaultdict
from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import select
from sqlalchemy.orm import Session

from kart_gp.database import Base, engine, get_db
from kart_gp.models import Event, Pilot
from kart_gp.schemas import (
    EventCreate,
    FinishingPositionsUpsert,
    PilotCreate,
    QualyManualAssign,
    QualyTimesUpsert,
    TeamsGenerate,
    TimeAttackSessionCreate,
    TimeAttackTimesUpsert,
)
from kart_gp.services import (
    assign_qualy,
    assign_qualy_manual,
    calculate_race_result,
    combined_standings,
    create_time_attack_session,
    delete_race_grid,
    generate_race_grid,
    generate_teams,
    get_event_or_404,
    get_race_result,
    get_race_grid,
    individual_standings,
    list_qualy_sessions,
    list_teams,
    list_time_attack_sessions,
    recalculate_time_attack,
    record_qualy_times,
    reset_qualy,
    save_time_attack_times,
    standings_snapshot,
    team_standings,
    to_domain_pilot,
    toggle_qualy,
    toggle_time_attack_assignment,
)


logging.basicConfig(
    level=os.getenv("KART_GP_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


class LeaderboardHub:
    def __init__(self) -> None:
        self._connections: dict[int, set[WebSocket]] = defaultdict(set)

    async def connect(self, event_id: int, ws: WebSocket) -> None:
        await ws.accept()
        self._connections[event_id].add(ws)

    def disconnect(self, event_id: int, ws: WebSocket) -> None:
        if event_id in self._connections and ws in self._connections[event_id]:
            self._connections[event_id].remove(ws)
            if not self._connections[event_id]:
                del self._connections[event_id]

    async def broadcast(self, event_id: int, payload: dict[str, Any]) -> None:
        targets = list(self._connections.get(event_id, set()))
        for ws in targets:
            try:
                await ws.send_json(payload)
            except Exception:
                logger.debug("dropping dead standings socket for event %s", event_id)
                self.disconnect(event_id, ws)


app = FastAPI(
    title="Kart GP - Championship Engine",
    version="1.0.0",
    description=(
        "Time Attack and Qualy standings, race grids with 390cc/270cc start "
        "positions, race scoring with category bonuses, individual and team standings."
    ),
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

hub = LeaderboardHub()


@app.on_event("startup")
def on_startup() -> None:
    Base.metadata.create_all(bind=engine)


def _event_summary(db: Session, event: Event) -> dict[str, Any]:
    pilot_count = db.query(Pilot).filter(Pilot.event_id == event.id).count()
    return {
        "id": event.id,
        "name": event.name,
        "status": event.status,
        "max_pilots": event.max_pilots,
        "qualy_groups": event.qualy_groups,
        "teams_count": event.teams_count,
        "pilot_count": pilot_count,
    }


def _dump(items) -> list[dict[str, Any]]:
    return [item.to_json() for item in items]


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/events")
def create_event(payload: EventCreate, db: Session = Depends(get_db)):
    existing = db.scalar(select(Event).where(Event.name == payload.name.strip()))
    if existing:
        raise HTTPException(status_code=400, detail="Event name already exists")
    event = Event(
        name=payload.name.strip(),
        max_pilots=payload.max_pilots,
        qualy_groups=payload.qualy_groups,
        teams_count=payload.teams_count,
    )
    db.add(event)
    db.commit()
    db.refresh(event)
    return _event_summary(db, event)


@app.get("/events")
def list_events(db: Session = Depends(get_db)):
    rows = db.scalars(select(Event).order_by(Event.id.asc())).all()
    return [_event_summary(db, e) for e in rows]


@app.get("/events/{event_id}")
def get_event(event_id: int, db: Session = Depends(get_db)):
    return _event_summary(db, get_event_or_404(db, event_id))


@app.post("/events/{event_id}/pilots")
def create_pilot(event_id: int, payload: PilotCreate, db: Session = Depends(get_db)):
    event = get_event_or_404(db, event_id)
    existing = db.scalar(select(Pilot).where(Pilot.event_id == event.id, Pilot.number == payload.number))
    if existing:
        raise HTTPException(status_code=400, detail="Pilot number already exists in this event")
    pilot = Pilot(
        event_id=event.id,
        number=payload.number,
        full_name=payload.full_name.strip(),
        kart=payload.kart,
        level=payload.level,
        has_time_attack=payload.has_time_attack,
    )
    db.add(pilot)
    db.commit()
    db.refresh(pilot)
    return to_domain_pilot(pilot).to_json()


@app.get("/events/{event_id}/pilots")
def list_event_pilots(event_id: int, db: Session = Depends(get_db)):
    event = get_event_or_404(db, event_id)
    rows = db.scalars(select(Pilot).where(Pilot.event_id == event.id).order_by(Pilot.number.asc())).all()
    return [to_domain_pilot(p).to_json() for p in rows]


@app.post("/events/{event_id}/time-attack/sessions")
def add_time_attack_session(event_id: int, payload: TimeAttackSessionCreate, db: Session = Depends(get_db)):
    created = create_time_attack_session(db, event_id, payload.name, payload.max_capacity)
    db.commit()
    return created.to_json()


@app.get("/events/{event_id}/time-attack/sessions")
def get_time_attack_sessions(event_id: int, db: Session = Depends(get_db)):
    return _dump(list_time_attack_sessions(db, event_id))


@app.put("/events/{event_id}/time-attack/sessions/{session_id}/times")
def put_time_attack_times(
    event_id: int, session_id: str, payload: TimeAttackTimesUpsert, db: Session = Depends(get_db)
):
    session = save_time_attack_times(db, event_id, session_id, payload.times)
    db.commit()
    return session.to_json()


@app.post("/events/{event_id}/time-attack/recalculate")
def post_time_attack_recalculate(event_id: int, db: Session = Depends(get_db)):
    sessions = recalculate_time_attack(db, event_id)
    db.commit()
    return _dump(sessions)


@app.post("/events/{event_id}/time-attack/sessions/{session_id}/assignments/{pilot_id}")
def post_time_attack_assignment(event_id: int, session_id: str, pilot_id: str, db: Session = Depends(get_db)):
    session = toggle_time_attack_assignment(db, event_id, session_id, pilot_id)
    db.commit()
    return session.to_json()


@app.get("/events/{event_id}/qualy/sessions")
def get_qualy_sessions(event_id: int, db: Session = Depends(get_db)):
    return _dump(list_qualy_sessions(db, event_id))


@app.post("/events/{event_id}/qualy/assign/manual")
def post_qualy_manual(event_id: int, payload: QualyManualAssign, db: Session = Depends(get_db)):
    sessions = assign_qualy_manual(db, event_id, payload.assignments)
    db.commit()
    return _dump(sessions)


@app.post("/events/{event_id}/qualy/assign/{mode}")
def post_qualy_assign(
    event_id: int,
    mode: str,
    seed: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
):
    sessions = assign_qualy(db, event_id, mode, seed)
    db.commit()
    return _dump(sessions)


@app.put("/events/{event_id}/qualy/times")
def put_qualy_times(event_id: int, payload: QualyTimesUpsert, db: Session = Depends(get_db)):
    sessions = record_qualy_times(db, event_id, payload.times)
    db.commit()
    return _dump(sessions)


@app.post("/events/{event_id}/qualy/reset")
def post_qualy_reset(event_id: int, db: Session = Depends(get_db)):
    sessions = reset_qualy(db, event_id)
    db.commit()
    return _dump(sessions)


@app.post("/events/{event_id}/qualy/sessions/{session_id}/assignments/{pilot_id}")
def post_qualy_assignment(event_id: int, session_id: str, pilot_id: str, db: Session = Depends(get_db)):
    session = toggle_qualy(db, event_id, session_id, pilot_id)
    db.commit()
    return session.to_json()


@app.get("/events/{event_id}/standings/combined")
def get_combined_standings(event_id: int, db: Session = Depends(get_db)):
    return _dump(combined_standings(db, event_id))


@app.get("/events/{event_id}/teams")
def get_teams(event_id: int, db: Session = Depends(get_db)):
    return _dump(list_teams(db, event_id))


@app.post("/events/{event_id}/teams/generate")
def post_generate_teams(event_id: int, payload: TeamsGenerate, db: Session = Depends(get_db)):
    teams = generate_teams(db, event_id, payload.teams_count)
    db.commit()
    return _dump(teams)


@app.post("/events/{event_id}/races/grid")
def post_race_grid(
    event_id: int,
    payload: dict[str, Any] = Body(...),
    seed: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
):
    grid = generate_race_grid(db, event_id, payload, seed)
    db.commit()
    return grid.to_json()


@app.get("/events/{event_id}/races/grid")
def get_grid(event_id: int, db: Session = Depends(get_db)):
    return get_race_grid(db, event_id).to_json()


@app.delete("/events/{event_id}/races/grid")
def delete_grid(event_id: int, db: Session = Depends(get_db)):
    delete_race_grid(db, event_id)
    db.commit()
    return {"deleted": True}


@app.post("/events/{event_id}/results/{race_key}")
async def post_race_result(
    event_id: int, race_key: str, payload: FinishingPositionsUpsert, db: Session = Depends(get_db)
):
    result = calculate_race_result(db, event_id, race_key, payload.positions)
    db.commit()
    await hub.broadcast(event_id, standings_snapshot(db, event_id))
    return result.to_json()


@app.get("/events/{event_id}/results/{race_key}")
def get_result(event_id: int, race_key: str, db: Session = Depends(get_db)):
    return get_race_result(db, event_id, race_key).to_json()


@app.get("/events/{event_id}/standings/individual")
def get_individual_standings(event_id: int, db: Session = Depends(get_db)):
    return _dump(individual_standings(db, event_id))


@app.get("/events/{event_id}/standings/teams")
def get_team_standings(event_id: int, db: Session = Depends(get_db)):
    return _dump(team_standings(db, event_id))


@app.websocket("/ws/events/{event_id}/standings")
async def standings_ws(websocket: WebSocket, event_id: int, db: Session = Depends(get_db)):
    get_event_or_404(db, event_id)
    await hub.connect(event_id, websocket)
    try:
        await websocket.send_json({**standings_snapshot(db, event_id), "type": "bootstrap"})
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        hub.disconnect(event_id, websocket)
