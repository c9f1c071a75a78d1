import os
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal

import bcrypt
import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError

from fintrack.currency_conversion import (
    ConversionResult,
    CurrencyConverter,
    OpenExchangeRatesClient,
)
from fintrack.database import create_db_engine, init_db, users
from fintrack.errors import NotFoundError, UpstreamFetchError, ValidationError
from fintrack.logging_config import setup_logging
from fintrack.transaction_aggregation import (
    Transaction,
    TransactionType,
    category_summary,
    monthly_trend,
    summarize,
    validate_transaction,
)
from fintrack.transaction_store import TransactionFilters, TransactionStore

logger = structlog.get_logger()

database_url = os.getenv("DATABASE_URL", "sqlite:///./fintrack.db")
engine = create_db_engine(database_url)

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:5173")

RATE_CLIENT = OpenExchangeRatesClient(
    app_id=os.getenv("OPEN_EXCHANGE_RATES_APP_ID", ""),
    base_url=os.getenv("OPEN_EXCHANGE_RATES_URL", "https://openexchangerates.org/api"),
    timeout=float(os.getenv("RATE_FETCH_TIMEOUT", "8")),
)
CONVERTER = CurrencyConverter(client=RATE_CLIENT)
STORE = TransactionStore(engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        json_output=os.getenv("ENVIRONMENT", "development") == "production",
    )
    init_db(engine)
    logger.info("app_starting", database=engine.url.render_as_string(hide_password=True))
    yield
    logger.info("app_stopping")


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_store() -> TransactionStore:
    return STORE


def get_converter() -> CurrencyConverter:
    return CONVERTER


class SignupPayload(BaseModel):
    username: str
    email: str
    password: str


class CredentialsPayload(BaseModel):
    username: str
    password: str


class UserResponse(BaseModel):
    id: int
    username: str
    email: str
    created_at: datetime | None = None


class TransactionPayload(BaseModel):
    description: str
    amount: Decimal
    type: str | None = None
    transaction_date: datetime | None = None
    category: str | None = None
    notes: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        if payload.type is not None:
            payload.type = TransactionType.validate(payload.type).value
        payload.category = (payload.category.strip() or None) if payload.category else None
        payload.notes = (payload.notes.strip() or None) if payload.notes else None
        return payload

    def to_transaction(self, transaction_date: datetime) -> Transaction:
        return Transaction(
            description=self.description,
            amount=self.amount,
            type=TransactionType(self.type) if self.type else None,
            transaction_date=self.transaction_date or transaction_date,
            category=self.category,
            notes=self.notes,
        )


class TransactionResponse(BaseModel):
    id: int
    description: str
    amount: Decimal
    type: TransactionType
    transaction_date: datetime
    category: str | None = None
    notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_transaction(cls, transaction: Transaction) -> "TransactionResponse":
        return cls(
            id=transaction.id,
            description=transaction.description,
            amount=transaction.amount,
            type=transaction.type,
            transaction_date=transaction.transaction_date,
            category=transaction.category,
            notes=transaction.notes,
            created_at=transaction.created_at,
            updated_at=transaction.updated_at,
        )


class TransactionPageResponse(BaseModel):
    content: list[TransactionResponse]
    page: int
    size: int
    total_elements: int
    total_pages: int


class SummaryResponse(BaseModel):
    total_income: Decimal
    total_expenses: Decimal
    net_worth: Decimal
    income_count: int
    expense_count: int


class TypeTotalResponse(BaseModel):
    type: TransactionType
    total: Decimal
    count: int
    start_date: datetime | None = None
    end_date: datetime | None = None


class CategorySummaryResponse(BaseModel):
    category: str
    total_amount: Decimal
    transaction_count: int
    income_amount: Decimal
    expense_amount: Decimal


class MonthlyTrendResponse(BaseModel):
    month: str
    income: Decimal
    expenses: Decimal
    transaction_count: int


class CurrencyConversionPayload(BaseModel):
    amount: Decimal
    from_currency: str
    to_currency: str

    @classmethod
    def validate_payload(cls, payload: "CurrencyConversionPayload") -> "CurrencyConversionPayload":
        if payload.amount <= 0:
            raise ValidationError("Amount must be positive")
        return payload


class ConvertMultiplePayload(BaseModel):
    amount: Decimal
    from_currency: str
    to_currencies: list[str]

    @classmethod
    def validate_payload(cls, payload: "ConvertMultiplePayload") -> "ConvertMultiplePayload":
        if payload.amount <= 0:
            raise ValidationError("Amount must be positive")
        if not payload.to_currencies:
            raise ValidationError("At least one target currency is required")
        return payload


class ConversionResponse(BaseModel):
    original_amount: Decimal
    from_currency: str
    converted_amount: Decimal
    to_currency: str
    exchange_rate: Decimal
    timestamp: datetime
    source: str

    @classmethod
    def from_result(cls, result: ConversionResult) -> "ConversionResponse":
        return cls(
            original_amount=result.original_amount,
            from_currency=result.from_currency,
            converted_amount=result.converted_amount,
            to_currency=result.to_currency,
            exchange_rate=result.exchange_rate,
            timestamp=result.timestamp,
            source=result.source,
        )


class ExchangeRateResponse(BaseModel):
    from_currency: str
    to_currency: str
    exchange_rate: Decimal


class RatesResponse(BaseModel):
    base_currency: str
    rates: dict[str, Decimal]
    timestamp: datetime
    source: str


class CurrencyInfoResponse(BaseModel):
    code: str
    name: str
    symbol: str


class CacheStatusResponse(BaseModel):
    cache_stale: bool
    message: str
    last_refresh: datetime | None = None


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, UpstreamFetchError):
        logger.error("upstream_fetch_failed", error=str(exc))
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail="Unexpected error.")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def get_user_id(x_user_id: str | None = Header(None)) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    with engine.begin() as conn:
        result = conn.execute(select(users.c.id).where(users.c.id == user_id))
        if not result.first():
            raise HTTPException(status_code=404, detail="User not found.")
    return user_id


def check_date_range(start_date: datetime | None, end_date: datetime | None) -> None:
    if start_date is not None and end_date is not None and start_date > end_date:
        raise HTTPException(status_code=400, detail="Start date must be on or before end date.")


def parse_transaction_type(value: str) -> TransactionType:
    try:
        return TransactionType.validate(value)
    except ValidationError as exc:
        raise http_error(exc) from exc


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/auth/signup", response_model=UserResponse)
def signup(payload: SignupPayload) -> UserResponse:
    username = payload.username.strip()
    email = payload.email.strip().lower()
    if not username or not email or not payload.password:
        raise HTTPException(status_code=400, detail="Username, email and password required.")
    hashed_password = hash_password(payload.password)

    stmt = (
        insert(users)
        .values(username=username, email=email, hashed_password=hashed_password)
        .returning(users.c.id, users.c.username, users.c.email, users.c.created_at)
    )
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Username or email already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create user.")
    logger.info("user_registered", user_id=row["id"])
    return UserResponse(**row)


@app.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload) -> UserResponse:
    username = payload.username.strip()
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.username == username)).mappings().first()

    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    return UserResponse(
        id=row["id"],
        username=row["username"],
        email=row["email"],
        created_at=row["created_at"],
    )


@app.post("/transactions", response_model=TransactionResponse)
def create_transaction(
    payload: TransactionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    store: TransactionStore = Depends(get_store),
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TransactionPayload.validate_payload(payload)
        transaction = validate_transaction(payload.to_transaction(datetime.now()))
    except ValidationError as exc:
        raise http_error(exc) from exc
    return TransactionResponse.from_transaction(store.save(transaction, user_id))


@app.get("/transactions", response_model=TransactionPageResponse)
def list_transactions(
    page: int = Query(0),
    size: int = Query(10),
    sort_by: str = Query("transaction_date"),
    sort_dir: str = Query("desc"),
    x_user_id: str | None = Header(None, alias="x-user-id"),
    store: TransactionStore = Depends(get_store),
) -> TransactionPageResponse:
    user_id = get_user_id(x_user_id)
    try:
        result = store.find_by_user(user_id, page=page, size=size, sort_by=sort_by, sort_dir=sort_dir)
    except ValidationError as exc:
        raise http_error(exc) from exc
    return TransactionPageResponse(
        content=[TransactionResponse.from_transaction(txn) for txn in result.items],
        page=result.page,
        size=result.size,
        total_elements=result.total_elements,
        total_pages=result.total_pages,
    )


@app.get("/transactions/recent", response_model=list[TransactionResponse])
def recent_transactions(
    x_user_id: str | None = Header(None, alias="x-user-id"),
    store: TransactionStore = Depends(get_store),
) -> list[TransactionResponse]:
    user_id = get_user_id(x_user_id)
    return [TransactionResponse.from_transaction(txn) for txn in store.recent(user_id)]


@app.get("/transactions/categories", response_model=list[str])
def list_categories(
    x_user_id: str | None = Header(None, alias="x-user-id"),
    store: TransactionStore = Depends(get_store),
) -> list[str]:
    user_id = get_user_id(x_user_id)
    return store.distinct_categories(user_id)


@app.get("/transactions/summary", response_model=SummaryResponse)
def transaction_summary(
    start_date: datetime | None = Query(None),
    end_date: datetime | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
    store: TransactionStore = Depends(get_store),
) -> SummaryResponse:
    user_id = get_user_id(x_user_id)
    check_date_range(start_date, end_date)
    rows = store.find_all_by_user(user_id, TransactionFilters(start=start_date, end=end_date))
    summary = summarize(rows)
    return SummaryResponse(
        total_income=summary.total_income,
        total_expenses=summary.total_expenses,
        net_worth=summary.net_worth,
        income_count=summary.income_count,
        expense_count=summary.expense_count,
    )


@app.get("/transactions/date-range", response_model=list[TransactionResponse])
def transactions_by_date_range(
    start_date: datetime = Query(...),
    end_date: datetime = Query(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
    store: TransactionStore = Depends(get_store),
) -> list[TransactionResponse]:
    user_id = get_user_id(x_user_id)
    check_date_range(start_date, end_date)
    rows = store.find_all_by_user(user_id, TransactionFilters(start=start_date, end=end_date))
    return [TransactionResponse.from_transaction(txn) for txn in rows]


@app.get("/transactions/type/{txn_type}", response_model=list[TransactionResponse])
def transactions_by_type(
    txn_type: str,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    store: TransactionStore = Depends(get_store),
) -> list[TransactionResponse]:
    user_id = get_user_id(x_user_id)
    resolved_type = parse_transaction_type(txn_type)
    rows = store.find_all_by_user(user_id, TransactionFilters(type=resolved_type))
    return [TransactionResponse.from_transaction(txn) for txn in rows]


@app.get("/transactions/type/{txn_type}/date-range", response_model=list[TransactionResponse])
def transactions_by_type_and_date_range(
    txn_type: str,
    start_date: datetime = Query(...),
    end_date: datetime = Query(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
    store: TransactionStore = Depends(get_store),
) -> list[TransactionResponse]:
    user_id = get_user_id(x_user_id)
    resolved_type = parse_transaction_type(txn_type)
    check_date_range(start_date, end_date)
    rows = store.find_all_by_user(
        user_id,
        TransactionFilters(type=resolved_type, start=start_date, end=end_date),
    )
    return [TransactionResponse.from_transaction(txn) for txn in rows]


@app.get("/transactions/type/{txn_type}/total", response_model=TypeTotalResponse)
def transaction_total_by_type(
    txn_type: str,
    start_date: datetime | None = Query(None),
    end_date: datetime | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
    store: TransactionStore = Depends(get_store),
) -> TypeTotalResponse:
    user_id = get_user_id(x_user_id)
    resolved_type = parse_transaction_type(txn_type)
    check_date_range(start_date, end_date)
    return TypeTotalResponse(
        type=resolved_type,
        total=store.sum_by_type(user_id, resolved_type, start=start_date, end=end_date),
        count=store.count_by_type(user_id, resolved_type, start=start_date, end=end_date),
        start_date=start_date,
        end_date=end_date,
    )


@app.get("/transactions/category/{category}", response_model=list[TransactionResponse])
def transactions_by_category(
    category: str,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    store: TransactionStore = Depends(get_store),
) -> list[TransactionResponse]:
    user_id = get_user_id(x_user_id)
    rows = store.find_all_by_user(user_id, TransactionFilters(category=category))
    return [TransactionResponse.from_transaction(txn) for txn in rows]


@app.get(
    "/transactions/analytics/category-summary",
    response_model=list[CategorySummaryResponse],
)
def analytics_category_summary(
    x_user_id: str | None = Header(None, alias="x-user-id"),
    store: TransactionStore = Depends(get_store),
) -> list[CategorySummaryResponse]:
    user_id = get_user_id(x_user_id)
    return [
        CategorySummaryResponse(
            category=entry.category,
            total_amount=entry.total_amount,
            transaction_count=entry.transaction_count,
            income_amount=entry.income_amount,
            expense_amount=entry.expense_amount,
        )
        for entry in category_summary(store.find_all_by_user(user_id))
    ]


@app.get(
    "/transactions/analytics/monthly-trends",
    response_model=list[MonthlyTrendResponse],
)
def analytics_monthly_trends(
    months: int = Query(12),
    x_user_id: str | None = Header(None, alias="x-user-id"),
    store: TransactionStore = Depends(get_store),
) -> list[MonthlyTrendResponse]:
    user_id = get_user_id(x_user_id)
    try:
        trends = monthly_trend(store.find_all_by_user(user_id), months=months, today=date.today())
    except ValidationError as exc:
        raise http_error(exc) from exc
    return [
        MonthlyTrendResponse(
            month=entry.month,
            income=entry.income,
            expenses=entry.expenses,
            transaction_count=entry.transaction_count,
        )
        for entry in trends
    ]


@app.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    store: TransactionStore = Depends(get_store),
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        transaction = store.get(transaction_id, user_id)
    except NotFoundError as exc:
        raise http_error(exc) from exc
    return TransactionResponse.from_transaction(transaction)


@app.put("/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: int,
    payload: TransactionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    store: TransactionStore = Depends(get_store),
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        existing = store.get(transaction_id, user_id)
        payload = TransactionPayload.validate_payload(payload)
        transaction = validate_transaction(payload.to_transaction(existing.transaction_date))
        updated = store.update(transaction_id, user_id, transaction)
    except (ValidationError, NotFoundError) as exc:
        raise http_error(exc) from exc
    return TransactionResponse.from_transaction(updated)


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    store: TransactionStore = Depends(get_store),
) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        store.delete(transaction_id, user_id)
    except NotFoundError as exc:
        raise http_error(exc) from exc
    return {"status": "deleted"}


@app.post("/currency/convert", response_model=ConversionResponse)
def convert_currency(
    payload: CurrencyConversionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    converter: CurrencyConverter = Depends(get_converter),
) -> ConversionResponse:
    get_user_id(x_user_id)
    try:
        payload = CurrencyConversionPayload.validate_payload(payload)
        result = converter.convert(payload.amount, payload.from_currency, payload.to_currency)
    except (ValidationError, NotFoundError, UpstreamFetchError) as exc:
        raise http_error(exc) from exc
    return ConversionResponse.from_result(result)


@app.post("/currency/convert-multiple", response_model=list[ConversionResponse])
def convert_multiple_currencies(
    payload: ConvertMultiplePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    converter: CurrencyConverter = Depends(get_converter),
) -> list[ConversionResponse]:
    get_user_id(x_user_id)
    try:
        payload = ConvertMultiplePayload.validate_payload(payload)
        results = converter.convert_many(payload.amount, payload.from_currency, payload.to_currencies)
    except (ValidationError, NotFoundError, UpstreamFetchError) as exc:
        raise http_error(exc) from exc
    return [ConversionResponse.from_result(result) for result in results]


@app.get("/currency/rate/{from_currency}/{to_currency}", response_model=ExchangeRateResponse)
def exchange_rate(
    from_currency: str,
    to_currency: str,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    converter: CurrencyConverter = Depends(get_converter),
) -> ExchangeRateResponse:
    get_user_id(x_user_id)
    try:
        rate = converter.rate(from_currency, to_currency)
    except (ValidationError, NotFoundError, UpstreamFetchError) as exc:
        raise http_error(exc) from exc
    return ExchangeRateResponse(
        from_currency=from_currency.strip().upper(),
        to_currency=to_currency.strip().upper(),
        exchange_rate=rate,
    )


@app.get("/currency/rates/{base_currency}", response_model=RatesResponse)
def exchange_rates(
    base_currency: str,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    converter: CurrencyConverter = Depends(get_converter),
) -> RatesResponse:
    get_user_id(x_user_id)
    try:
        table = converter.fetch_rates(base_currency)
    except (ValidationError, UpstreamFetchError) as exc:
        raise http_error(exc) from exc
    return RatesResponse(
        base_currency=table.base,
        rates=dict(table.rates),
        timestamp=table.fetched_at,
        source=table.source,
    )


@app.get("/currency/supported", response_model=list[str])
def supported_currencies(
    x_user_id: str | None = Header(None, alias="x-user-id"),
    converter: CurrencyConverter = Depends(get_converter),
) -> list[str]:
    get_user_id(x_user_id)
    return converter.supported_currencies()


@app.get("/currency/info/{currency_code}", response_model=CurrencyInfoResponse)
def currency_info(
    currency_code: str,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    converter: CurrencyConverter = Depends(get_converter),
) -> CurrencyInfoResponse:
    get_user_id(x_user_id)
    try:
        info = converter.currency_info(currency_code)
    except ValidationError as exc:
        raise http_error(exc) from exc
    return CurrencyInfoResponse(code=info.code, name=info.name, symbol=info.symbol)


@app.get("/currency/cache/status", response_model=CacheStatusResponse)
def cache_status(
    x_user_id: str | None = Header(None, alias="x-user-id"),
    converter: CurrencyConverter = Depends(get_converter),
) -> CacheStatusResponse:
    get_user_id(x_user_id)
    is_stale = converter.is_stale()
    return CacheStatusResponse(
        cache_stale=is_stale,
        message="Cache is stale, will fetch fresh rates" if is_stale else "Cache is fresh",
        last_refresh=converter.last_refresh,
    )


@app.delete("/currency/cache")
def clear_cache(
    x_user_id: str | None = Header(None, alias="x-user-id"),
    converter: CurrencyConverter = Depends(get_converter),
) -> dict:
    get_user_id(x_user_id)
    converter.clear()
    return {"message": "Cache cleared successfully"}
