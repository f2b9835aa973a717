import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Body, Depends, FastAPI, Header, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr
from pymongo.errors import PyMongoError

import database
from database import get_db
from auth import clear_token, get_current_user, restrict_to, send_token
from errors import AppError, ForbiddenError
from query import parse_query
import bookings
import reviews
import settings
import tours
import users

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("natours")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if not settings.JWT_SECRET:
        raise RuntimeError("JWT_SECRET is not set")
    if database.db is not None:
        database.ensure_indexes(database.db)
        logger.info("DB connection successful!")
    yield


app = FastAPI(title="Natours API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def _list(docs: list) -> dict:
    return {"status": "success", "results": len(docs), "data": {"data": docs}}


def _one(doc) -> dict:
    return {"status": "success", "data": {"data": doc}}


# -------------------- REQUEST BODIES --------------------

class SignupRequest(BaseModel):
    name: str
    email: EmailStr
    password: str
    password_confirm: str


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    password: str
    password_confirm: str


class UpdatePasswordRequest(BaseModel):
    password_current: str
    password: str
    password_confirm: str


class ReviewRequest(BaseModel):
    review: Optional[str] = None
    rating: Optional[float] = None
    tour: Optional[str] = None


@app.get("/")
def read_root():
    return {"message": "Natours API is running"}


@app.get("/test")
def database_status():
    """Whether the API has a database and which collections it holds."""
    status = {"status": "success", "database": "not configured", "collections": []}
    if database.db is None:
        return status
    try:
        status["collections"] = sorted(database.db.list_collection_names())
        status["database"] = "connected"
    except PyMongoError as exc:
        logger.warning("Database check failed: %s", exc)
        status["status"] = "error"
        status["database"] = "unreachable"
    return status



# -------------------- TOURS --------------------

TOUR_WRITERS = ("admin", "lead-guide")


@app.get("/api/v1/tours/top-5-cheap")
def top_five_cheap(db=Depends(get_db)):
    docs = tours.find_tours(
        db,
        sort=[("ratings_average", -1), ("price", 1)],
        limit=5,
        fields={"name": 1, "price": 1, "ratings_average": 1, "summary": 1, "difficulty": 1},
    )
    return _list(docs)


@app.get("/api/v1/tours/tour-stats")
def get_tour_stats(db=Depends(get_db)):
    return {"status": "success", "data": {"stats": tours.tour_stats(db)}}


@app.get("/api/v1/tours/monthly-plan/{year}")
def get_monthly_plan(year: int, db=Depends(get_db), current=Depends(restrict_to("admin", "lead-guide", "guide"))):
    return {"status": "success", "data": {"plan": tours.monthly_plan(db, year)}}


@app.get("/api/v1/tours/tours-within/{distance}/center/{latlng}/unit/{unit}")
def get_tours_within(distance: float, latlng: str, unit: str, db=Depends(get_db)):
    return _list(tours.tours_within(db, distance, latlng, unit))


@app.get("/api/v1/tours/distances/{latlng}/unit/{unit}")
def get_distances(latlng: str, unit: str, db=Depends(get_db)):
    return {"status": "success", "data": {"data": tours.distances(db, latlng, unit)}}


@app.get("/api/v1/tours")
def list_tours(request: Request, db=Depends(get_db)):
    q = parse_query(request.query_params.multi_items())
    docs = tours.find_tours(db, q.filter, q.sort, q.skip, q.limit, q.projection)
    return _list(docs)


@app.post("/api/v1/tours", status_code=201)
def create_tour(payload: dict = Body(...), db=Depends(get_db), current=Depends(restrict_to(*TOUR_WRITERS))):
    return _one(tours.create_tour(db, payload))


@app.get("/api/v1/tours/{tour_id}")
def get_tour(tour_id: str, db=Depends(get_db)):
    return _one(tours.find_tour(db, tour_id))


@app.patch("/api/v1/tours/{tour_id}")
def update_tour(tour_id: str, payload: dict = Body(...), db=Depends(get_db),
                current=Depends(restrict_to(*TOUR_WRITERS))):
    return _one(tours.update_tour(db, tour_id, payload))


@app.delete("/api/v1/tours/{tour_id}", status_code=204)
def delete_tour(tour_id: str, db=Depends(get_db), current=Depends(restrict_to(*TOUR_WRITERS))):
    tours.delete_tour(db, tour_id)
    return Response(status_code=204)


# -------------------- REVIEWS --------------------

@app.get("/api/v1/tours/{tour_id}/reviews")
def list_tour_reviews(tour_id: str, request: Request, db=Depends(get_db), current=Depends(get_current_user)):
    q = parse_query(request.query_params.multi_items())
    q.filter["tour"] = tour_id
    return _list(reviews.find_reviews(db, q.filter, q.sort, q.skip, q.limit))


@app.post("/api/v1/tours/{tour_id}/reviews", status_code=201)
def create_tour_review(tour_id: str, payload: ReviewRequest, db=Depends(get_db), current=Depends(restrict_to("user"))):
    return _one(reviews.create_review(db, tour_id, current["id"], payload.review, payload.rating))


@app.get("/api/v1/reviews")
def list_reviews(request: Request, db=Depends(get_db), current=Depends(get_current_user)):
    q = parse_query(request.query_params.multi_items())
    return _list(reviews.find_reviews(db, q.filter, q.sort, q.skip, q.limit))


@app.post("/api/v1/reviews", status_code=201)
def create_review(payload: ReviewRequest, db=Depends(get_db), current=Depends(restrict_to("user"))):
    return _one(reviews.create_review(db, payload.tour, current["id"], payload.review, payload.rating))


@app.get("/api/v1/reviews/{review_id}")
def get_review(review_id: str, db=Depends(get_db), current=Depends(get_current_user)):
    return _one(reviews.find_review(db, review_id))


def _check_review_owner(db, review_id: str, current: dict) -> None:
    if current.get("role") == "admin":
        return
    record = reviews.find_review_record(db, review_id)
    if record and str(record.get("user")) != current["id"]:
        raise ForbiddenError("You can only change your own reviews")


@app.patch("/api/v1/reviews/{review_id}")
def update_review(review_id: str, payload: dict = Body(...), db=Depends(get_db),
                  current=Depends(restrict_to("user", "admin"))):
    _check_review_owner(db, review_id, current)
    return _one(reviews.update_review(db, review_id, payload))


@app.delete("/api/v1/reviews/{review_id}", status_code=204)
def delete_review(review_id: str, db=Depends(get_db), current=Depends(restrict_to("user", "admin"))):
    _check_review_owner(db, review_id, current)
    reviews.delete_review(db, review_id)
    return Response(status_code=204)


# -------------------- AUTH / USERS --------------------

@app.post("/api/v1/users/signup", status_code=201)
def signup(payload: SignupRequest, response: Response, db=Depends(get_db)):
    # role is always "user" here; admins promote accounts afterwards
    created = users.create_user(db, payload.model_dump())
    return send_token(response, users.find_user_record(db, created["id"]))


@app.post("/api/v1/users/login")
def login(payload: LoginRequest, response: Response, db=Depends(get_db)):
    user = users.authenticate(db, payload.email, payload.password)
    return send_token(response, user)


@app.get("/api/v1/users/logout")
def logout(response: Response):
    clear_token(response)
    return {"status": "success"}


@app.post("/api/v1/users/forgot-password")
def forgot_password(payload: ForgotPasswordRequest, request: Request, db=Depends(get_db)):
    token = users.request_password_reset(db, payload.email)
    reset_url = f"{str(request.base_url).rstrip('/')}/api/v1/users/reset-password/{token}"
    # No mail transport here; the link is logged and returned so it can be used directly.
    logger.info("Password reset requested for %s", payload.email.lower())
    return {"status": "success", "message": "Token sent to email!", "reset_url": reset_url}


@app.patch("/api/v1/users/reset-password/{token}")
def reset_password(token: str, payload: ResetPasswordRequest, response: Response, db=Depends(get_db)):
    user = users.reset_password(db, token, payload.password, payload.password_confirm)
    return send_token(response, user)


@app.patch("/api/v1/users/update-my-password")
def update_my_password(payload: UpdatePasswordRequest, response: Response, db=Depends(get_db),
                       current=Depends(get_current_user)):
    user = users.change_password(db, current["id"], payload.password_current, payload.password, payload.password_confirm)
    return send_token(response, user)


@app.get("/api/v1/users/me")
def get_me(db=Depends(get_db), current=Depends(get_current_user)):
    return _one(users.find_user(db, current["id"]))


@app.get("/api/v1/users/me/tours")
def get_my_tours(db=Depends(get_db), current=Depends(get_current_user)):
    return _list(bookings.find_user_tours(db, current["id"]))


@app.patch("/api/v1/users/update-me")
def update_me(payload: dict = Body(...), db=Depends(get_db), current=Depends(get_current_user)):
    return {"status": "success", "data": {"user": users.update_me(db, current["id"], payload)}}


@app.delete("/api/v1/users/delete-me", status_code=204)
def delete_me(db=Depends(get_db), current=Depends(get_current_user)):
    users.deactivate(db, current["id"])
    return Response(status_code=204)


@app.get("/api/v1/users")
def list_users(request: Request, db=Depends(get_db), current=Depends(restrict_to("admin"))):
    q = parse_query(request.query_params.multi_items(), default_sort="name")
    return _list(users.find_users(db, q.filter, q.sort, q.skip, q.limit))


@app.get("/api/v1/users/{user_id}")
def get_user(user_id: str, db=Depends(get_db), current=Depends(restrict_to("admin"))):
    return _one(users.find_user(db, user_id))


@app.patch("/api/v1/users/{user_id}")
def update_user(user_id: str, payload: dict = Body(...), db=Depends(get_db), current=Depends(restrict_to("admin"))):
    return _one(users.update_user(db, user_id, payload))


@app.delete("/api/v1/users/{user_id}", status_code=204)
def delete_user(user_id: str, db=Depends(get_db), current=Depends(restrict_to("admin"))):
    users.delete_user(db, user_id)
    return Response(status_code=204)


# -------------------- BOOKINGS --------------------

BOOKING_MANAGERS = ("admin", "lead-guide")


@app.get("/api/v1/bookings/checkout-session/{tour_id}")
def get_checkout_session(tour_id: str, request: Request, db=Depends(get_db), current=Depends(get_current_user)):
    tour = tours.find_tour(db, tour_id, with_reviews=False)
    session = bookings.create_checkout_session(tour, current, str(request.base_url))
    return {"status": "success", "session": session}


@app.post("/webhook-checkout")
async def webhook_checkout(request: Request, stripe_signature: Optional[str] = Header(None), db=Depends(get_db)):
    payload = await request.body()
    event = bookings.verify_webhook(payload, stripe_signature)
    if event.get("type") == "checkout.session.completed":
        bookings.create_booking_checkout(db, event.get("data", {}).get("object", {}))
    return {"received": True}


@app.get("/api/v1/bookings")
def list_bookings(request: Request, db=Depends(get_db), current=Depends(restrict_to(*BOOKING_MANAGERS))):
    q = parse_query(request.query_params.multi_items())
    return _list(bookings.find_bookings(db, q.filter, q.sort, q.skip, q.limit))


@app.post("/api/v1/bookings", status_code=201)
def create_booking(payload: dict = Body(...), db=Depends(get_db), current=Depends(restrict_to(*BOOKING_MANAGERS))):
    return _one(bookings.create_booking(db, payload))


@app.get("/api/v1/bookings/{booking_id}")
def get_booking(booking_id: str, db=Depends(get_db), current=Depends(restrict_to(*BOOKING_MANAGERS))):
    return _one(bookings.find_booking(db, booking_id))


@app.patch("/api/v1/bookings/{booking_id}")
def update_booking(booking_id: str, payload: dict = Body(...), db=Depends(get_db),
                   current=Depends(restrict_to(*BOOKING_MANAGERS))):
    return _one(bookings.update_booking(db, booking_id, payload))


@app.delete("/api/v1/bookings/{booking_id}", status_code=204)
def delete_booking(booking_id: str, db=Depends(get_db), current=Depends(restrict_to(*BOOKING_MANAGERS))):
    bookings.delete_booking(db, booking_id)
    return Response(status_code=204)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
