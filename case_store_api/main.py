import os
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Literal

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError

#Database connection
client = MongoClient(os.getenv("MONGO_URI", "mongodb://localhost:27017/"))
db = client[os.getenv("MONGO_DB", "driver_support")]

cases = db["cases"]
case_messages = db["case_messages"]
pending_drivers = db["pending_drivers"]
drivers = db["drivers"]
companies = db["companies"]
counters = db["counters"]


@asynccontextmanager
async def lifespan(_: FastAPI):
    cases.create_index("id", unique=True)
    case_messages.create_index([("case_id", ASCENDING), ("id", ASCENDING)], unique=True)
    case_messages.create_index([("case_id", ASCENDING), ("seq", ASCENDING)], unique=True)
    companies.create_index("code", unique=True)
    yield


#Start API
app = FastAPI(title="Case Store API", lifespan=lifespan)

SEQ_ATTEMPTS = 5
SEARCH_FIELDS = ("id", "driver_id", "driver_name", "title", "last_message")


#Models
class CaseIn(BaseModel):
    driver_id: str = Field(..., min_length=1)
    driver_name: str = ""
    driver_email: str = ""
    company: str = ""
    flow_name: str = ""
    title: str = Field(..., min_length=1)
    description: str = ""
    status: Literal["open", "closed"] = "open"


class MessageIn(BaseModel):
    id: str = Field(..., min_length=1)
    text: str
    sender: Literal["system", "driver", "admin"]
    created_at: str | None = None
    attachment: str | None = None


class StatusPatch(BaseModel):
    status: Literal["open", "closed"]
    reason: str | None = None


class DriverSignupIn(BaseModel):
    driver_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    phone: str | None = None
    company_code: str | None = None


class CompanyIn(BaseModel):
    name: str = Field(..., min_length=1)
    code: str = Field(..., min_length=1)
    admin_email: str = Field(..., min_length=3)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _next_sequence(name: str) -> int:
    """Atomically increments the named counter and returns the new value."""
    counter = counters.find_one_and_update(
        {"_id": name},
        {"$inc": {"value": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return int(counter["value"])


def _generate_case_id() -> str:
    """Sequential identifiers of the form case-001."""
    return f"case-{_next_sequence('cases'):03d}"


def _get_case_or_404(case_id: str) -> dict:
    case = cases.find_one({"id": case_id}, {"_id": 0})
    if not case:
        raise HTTPException(status_code=404, detail="Case not found")
    return case


def _search_filter(status: str | None, driver_id: str | None, q: str | None) -> dict:
    query: dict = {}
    if status:
        query["status"] = status
    if driver_id:
        query["driver_id"] = driver_id
    if q and q.strip():
        pattern = re.escape(q.strip())
        query["$or"] = [{field: {"$regex": pattern, "$options": "i"}} for field in SEARCH_FIELDS]
    return query


#Endpoints
@app.post("/cases", status_code=201)
def create_case(data: CaseIn):
    now = _now()
    document = {
        **data.model_dump(),
        "close_reason": None,
        "last_message": "",
        "created_at": now,
        "updated_at": now,
    }
    for _ in range(SEQ_ATTEMPTS):
        document["id"] = _generate_case_id()
        document.pop("_id", None)
        try:
            cases.insert_one(document)
            break
        except DuplicateKeyError:
            continue
    else:
        raise HTTPException(status_code=503, detail="Could not allocate a case id")
    return {"message": "Case created", "case_id": document["id"]}


@app.get("/cases")
def list_cases(
    status: Literal["open", "closed"] | None = None,
    driver_id: str | None = None,
    q: str | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    query = _search_filter(status, driver_id, q)
    total = cases.count_documents(query)
    skip = (page - 1) * limit
    items = list(
        cases.find(query, {"_id": 0}).sort("updated_at", DESCENDING).skip(skip).limit(limit)
    )
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "cases": items,
    }


@app.get("/cases/{case_id}")
def get_case(case_id: str):
    return _get_case_or_404(case_id)


@app.patch("/cases/{case_id}/status")
def update_case_status(case_id: str, data: StatusPatch):
    case = _get_case_or_404(case_id)
    if case.get("status") == data.status:
        return {"message": f"Case already {data.status}", "modified": False, "status": data.status}
    cases.update_one(
        {"id": case_id},
        {"$set": {
            "status": data.status,
            "close_reason": data.reason if data.status == "closed" else None,
            "updated_at": _now(),
        }},
    )
    return {"message": "Case status updated", "modified": True, "status": data.status}


# Append-only, idempotent by message id
@app.post("/cases/{case_id}/messages", status_code=201)
def append_message(case_id: str, data: MessageIn):
    _get_case_or_404(case_id)
    if case_messages.find_one({"case_id": case_id, "id": data.id}, {"_id": 1}):
        return {"message": "Message already stored", "created": False, "id": data.id}
    document = {"case_id": case_id, **data.model_dump()}
    if not document["created_at"]:
        document["created_at"] = _now().replace(microsecond=0).isoformat()
    for _ in range(SEQ_ATTEMPTS):
        document["seq"] = _next_sequence(f"case_messages:{case_id}")
        document.pop("_id", None)
        try:
            case_messages.insert_one(document)
            break
        except DuplicateKeyError:
            # a concurrent writer stored the same id, or the counter lags older data
            if case_messages.find_one({"case_id": case_id, "id": data.id}, {"_id": 1}):
                return {"message": "Message already stored", "created": False, "id": data.id}
    else:
        raise HTTPException(status_code=503, detail="Could not allocate a message sequence")
    cases.update_one(
        {"id": case_id},
        {"$set": {"last_message": data.text, "updated_at": _now()}},
    )
    return {"message": "Message stored", "created": True, "id": data.id, "seq": document["seq"]}


@app.get("/cases/{case_id}/messages")
def list_messages(case_id: str, after: str | None = None):
    _get_case_or_404(case_id)
    query: dict = {"case_id": case_id}
    if after:
        anchor = case_messages.find_one({"case_id": case_id, "id": after}, {"seq": 1})
        if anchor:
            query["seq"] = {"$gt": anchor["seq"]}
    items = list(case_messages.find(query, {"_id": 0}).sort("seq", ASCENDING))
    return {"case_id": case_id, "messages": items}


@app.post("/drivers", status_code=201)
def signup_driver(data: DriverSignupIn):
    if drivers.find_one({"driver_id": data.driver_id}) or pending_drivers.find_one({"driver_id": data.driver_id}):
        raise HTTPException(status_code=409, detail="Driver already registered")
    if data.company_code and not companies.find_one({"code": data.company_code.upper()}):
        raise HTTPException(status_code=400, detail="Unknown company code")
    pending_drivers.insert_one({
        **data.model_dump(),
        "company_code": data.company_code.upper() if data.company_code else None,
        "status": "pending",
        "applied_at": _now(),
    })
    return {"message": "Signup successful. Waiting for admin approval.", "driver_id": data.driver_id}


@app.get("/drivers/pending")
def get_pending_drivers():
    items = list(pending_drivers.find({"status": "pending"}, {"_id": 0}))
    return {"drivers": items}


@app.get("/drivers/{driver_id}/status")
def get_driver_status(driver_id: str):
    pending = pending_drivers.find_one({"driver_id": driver_id}, {"_id": 0})
    if pending:
        return {"status": "pending", "data": pending}
    approved = drivers.find_one({"driver_id": driver_id}, {"_id": 0})
    if approved:
        return {"status": "approved", "data": approved}
    return {"status": "unknown", "data": None}


@app.post("/drivers/{driver_id}/approve")
def approve_driver(driver_id: str):
    pending = pending_drivers.find_one({"driver_id": driver_id}, {"_id": 0})
    if not pending:
        raise HTTPException(status_code=404, detail="Driver not found")
    drivers.insert_one({**pending, "status": "active", "approved_at": _now()})
    pending_drivers.delete_one({"driver_id": driver_id})
    return {"message": "Driver approved", "driver_id": driver_id}


@app.delete("/drivers/{driver_id}")
def reject_driver(driver_id: str):
    result = pending_drivers.delete_one({"driver_id": driver_id})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Driver not found")
    return {"message": "Driver rejected", "driver_id": driver_id}


@app.post("/companies", status_code=201)
def create_company(data: CompanyIn):
    code = data.code.strip().upper()
    if companies.find_one({"code": code}):
        raise HTTPException(status_code=409, detail="Company code already in use")
    companies.insert_one({
        "name": data.name,
        "code": code,
        "admin_email": data.admin_email,
        "created_at": _now(),
    })
    return {"message": "Company created", "code": code}


@app.get("/companies")
def list_companies():
    items = list(companies.find({}, {"_id": 0}).sort("name", ASCENDING))
    return {"companies": items}
