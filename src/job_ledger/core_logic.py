"""Business logic layer for the job ledger.

This module holds the session object every front end works through and the
typed repositories for customers, jobs and the company profile. Repositories
fill in defaults on read, coerce raw input on write, validate required fields
before the store is touched, and route every pricing edit of a job through the
override reconciliation policy.

Nothing here performs cross-entity validation: a job may reference a customer
id that no longer resolves, and its ``customer_name`` is a snapshot taken when
the job was written.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, Sequence, Tuple, TypeVar

from . import data_manager, log, money, overrides
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    PROFILE_DOCUMENT_ID,
    Collection,
    DiscountType,
    JobStatus,
    WorkflowList,
)
from .data_manager import (
    NotFound,
    PermissionDenied,
    RecordStoreError,
    StoreUnavailable,
    Subscription,
    ValidationError,
)
from .pricing import coerce_discount_type


T = TypeVar("T")


@dataclass(frozen=True)
class Session:
    """Explicit replacement for ambient tenant and store state.

    A session is created once when a front end starts and closed when it
    shuts down. It remembers the subscriptions opened through it so that
    :func:`close_session` can release them all.
    """

    settings: data_manager.ConfigSettings
    store: data_manager.RecordStore
    tenant_id: Optional[str] = None
    _subscriptions: List[Subscription] = field(default_factory=list, repr=False, compare=False)

    @property
    def ready(self) -> bool:
        """``True`` once a tenant identifier has been supplied."""

        return bool(self.tenant_id)

    def track(self, subscription: Subscription) -> Subscription:
        """Register a subscription for release at :func:`close_session`.

        Subscriptions cancelled since the last call are forgotten here.
        """

        self._subscriptions[:] = [tracked for tracked in self._subscriptions if tracked.active]
        self._subscriptions.append(subscription)
        return subscription

    @property
    def open_subscriptions(self) -> List[Subscription]:
        return [subscription for subscription in self._subscriptions if subscription.active]


@dataclass(frozen=True)
class Customer:
    """A customer of the shop."""

    id: str
    name: str
    phone: str = ""
    email: str = ""
    address: str = ""


@dataclass(frozen=True)
class Job:
    """A repair job as stored, with read defaults applied."""

    id: str
    customer_id: str = ""
    customer_name: str = ""
    date: Optional[datetime] = None
    status: JobStatus = JobStatus.ACTIVE
    glass_type: str = ""
    damage_type: str = ""
    repair_replacement: str = ""
    cost: float = 0.0
    quantity: int = 1
    discount_type: DiscountType = DiscountType.NONE
    discount_value: float = 0.0
    apply_sales_tax: bool = True
    notes: str = ""
    total_amount: float = 0.0
    paid_amount: float = 0.0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class WorkflowOption:
    """A named line-item template with default pricing."""

    id: str
    name: str
    cost: float = 0.0
    quantity: int = 1
    discount_type: DiscountType = DiscountType.NONE
    discount_value: float = 0.0


@dataclass(frozen=True)
class TenantProfile:
    """Company details, tax rate and workflow option lists of one tenant."""

    company_name: str = ""
    address: str = ""
    phone: str = ""
    email: str = ""
    sales_tax_rate: float = 0.0
    workflow_options: Mapping[WorkflowList, Tuple[WorkflowOption, ...]] = field(
        default_factory=lambda: {kind: () for kind in WorkflowList}
    )

    def options(self, workflow_list: WorkflowList | str) -> Tuple[WorkflowOption, ...]:
        return self.workflow_options.get(WorkflowList(workflow_list), ())


# Python attribute name -> stored document field name.
CUSTOMER_FIELDS: Dict[str, str] = {
    "name": "name",
    "phone": "phone",
    "email": "email",
    "address": "address",
}

JOB_FIELDS: Dict[str, str] = {
    "customer_id": "customerId",
    "customer_name": "customerName",
    "date": "date",
    "status": "status",
    "glass_type": "glassType",
    "damage_type": "damageType",
    "repair_replacement": "repairReplacement",
    "cost": "cost",
    "quantity": "quantity",
    "discount_type": "discountType",
    "discount_value": "discountValue",
    "apply_sales_tax": "applySalesTax",
    "notes": "notes",
    "total_amount": "totalAmount",
    "paid_amount": "paidAmount",
}

COMPANY_FIELDS: Dict[str, str] = {
    "company_name": "companyName",
    "address": "address",
    "phone": "phone",
    "email": "email",
}

WORKFLOW_OPTIONS_FIELD = "jobWorkflowOptions"

# Job field filled by a pick from each workflow list.
OPTION_TARGETS: Dict[WorkflowList, str] = {
    WorkflowList.GLASS_TYPES: "glass_type",
    WorkflowList.DAMAGE_TYPES: "damage_type",
    WorkflowList.REPAIR_REPLACEMENT: "repair_replacement",
}


def _now() -> datetime:
    return datetime.now(UTC)


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _flag(value: Any, default: bool = True) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, str):
        return value.strip().lower() not in {"false", "0", "no", "off"}
    return bool(value)


def _status(value: Any) -> JobStatus:
    if isinstance(value, JobStatus):
        return value
    try:
        return JobStatus(_text(value).strip().lower())
    except ValueError as exc:
        raise ValidationError(f"Unknown job status: {value}") from exc


def _require_text(value: Any, label: str) -> str:
    text = _text(value).strip()
    if not text:
        log.warning("Validation failed: %s is required", label)
        raise ValidationError(f"{label} is required")
    return text


def _require_nonnegative(value: Any, label: str) -> float:
    number = money.parse_or_default(value)
    if number < 0:
        log.warning("Validation failed: %s must not be negative (%s)", label, value)
        raise ValidationError(f"{label} must be zero or positive")
    return number


# ---------------------------------------------------------------------------
# Document conversion
# ---------------------------------------------------------------------------


def customer_from_document(doc_id: str, data: Mapping[str, Any]) -> Customer:
    return Customer(
        id=doc_id,
        name=_text(data.get("name")),
        phone=_text(data.get("phone")),
        email=_text(data.get("email")),
        address=_text(data.get("address")),
    )


def job_from_document(doc_id: str, data: Mapping[str, Any]) -> Job:
    """Build a :class:`Job` from stored fields, filling every documented default.

    Missing numbers read as ``0`` (quantity as ``1``), a missing tax flag as
    ``True``, a missing or unknown status as ``active`` and a missing discount
    type as no discount.
    """

    try:
        status = _status(data.get("status") or JobStatus.ACTIVE)
    except ValidationError:
        log.warning("Job '%s' has unknown status %r; reading as active", doc_id, data.get("status"))
        status = JobStatus.ACTIVE

    return Job(
        id=doc_id,
        customer_id=_text(data.get("customerId")),
        customer_name=_text(data.get("customerName")),
        date=money.parse_timestamp(data.get("date")),
        status=status,
        glass_type=_text(data.get("glassType")),
        damage_type=_text(data.get("damageType")),
        repair_replacement=_text(data.get("repairReplacement")),
        cost=money.parse_or_default(data.get("cost")),
        quantity=money.parse_quantity(data.get("quantity")),
        discount_type=coerce_discount_type(data.get("discountType")),
        discount_value=money.parse_or_default(data.get("discountValue")),
        apply_sales_tax=_flag(data.get("applySalesTax")),
        notes=_text(data.get("notes")),
        total_amount=money.parse_or_default(data.get("totalAmount")),
        paid_amount=money.parse_or_default(data.get("paidAmount")),
        created_at=money.parse_timestamp(data.get("createdAt")),
        updated_at=money.parse_timestamp(data.get("updatedAt")),
    )


def coerce_job_value(name: str, value: Any) -> Any:
    """Normalize one job attribute for persistence.

    Numeric text is parsed, dates become native timestamps, enumerations are
    stored by value.

    Raises:
        ValidationError: For unknown attributes or an unknown status.
    """

    if name not in JOB_FIELDS:
        raise ValidationError(f"Unknown job field: {name}")
    if name in {"cost", "discount_value", "total_amount", "paid_amount"}:
        return money.parse_or_default(value)
    if name == "quantity":
        return money.parse_quantity(value)
    if name == "discount_type":
        return coerce_discount_type(value).value
    if name == "status":
        return _status(value).value
    if name == "apply_sales_tax":
        return _flag(value)
    if name == "date":
        return money.parse_timestamp(value)
    return _text(value)


def job_changes_to_document(changes: Mapping[str, Any]) -> Dict[str, Any]:
    return {JOB_FIELDS[name]: coerce_job_value(name, value) for name, value in changes.items()}


def option_from_mapping(data: Mapping[str, Any], fallback_id: str) -> WorkflowOption:
    return WorkflowOption(
        id=_text(data.get("id")) or fallback_id,
        name=_text(data.get("name")),
        cost=money.parse_or_default(data.get("cost")),
        quantity=money.parse_quantity(data.get("quantity")),
        discount_type=coerce_discount_type(data.get("discountType")),
        discount_value=money.parse_or_default(data.get("discountValue")),
    )


def option_to_mapping(option: WorkflowOption) -> Dict[str, Any]:
    return {
        "id": option.id,
        "name": option.name,
        "cost": option.cost,
        "quantity": option.quantity,
        "discountType": option.discount_type.value,
        "discountValue": option.discount_value,
    }


def profile_from_document(data: Optional[Mapping[str, Any]], *, default_tax_rate: float = 0.0) -> TenantProfile:
    """Build a :class:`TenantProfile`, defaulting every missing field.

    Options written before ids were stored get an id derived from their list
    and position; the next write to that list persists it.
    """

    data = data or {}
    raw_options = data.get(WORKFLOW_OPTIONS_FIELD) or {}
    if not isinstance(raw_options, Mapping):
        log.warning("Ignoring malformed %s value", WORKFLOW_OPTIONS_FIELD)
        raw_options = {}

    options: Dict[WorkflowList, Tuple[WorkflowOption, ...]] = {}
    for kind in WorkflowList:
        entries = raw_options.get(kind.value) or []
        options[kind] = tuple(
            option_from_mapping(entry, f"{kind.value}-{index}")
            for index, entry in enumerate(entries)
            if isinstance(entry, Mapping)
        )

    rate = data.get("salesTaxRate")
    return TenantProfile(
        company_name=_text(data.get("companyName")),
        address=_text(data.get("address")),
        phone=_text(data.get("phone")),
        email=_text(data.get("email")),
        sales_tax_rate=default_tax_rate if rate is None else max(money.parse_or_default(rate), 0.0),
        workflow_options=options,
    )


def options_to_document(options: Mapping[WorkflowList, Sequence[WorkflowOption]]) -> Dict[str, Any]:
    return {kind.value: [option_to_mapping(option) for option in options.get(kind, ())] for kind in WorkflowList}


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


def open_session(config_path: Optional[Path] = None, *, tenant_id: Optional[str] = None) -> Session:
    """Load configuration, open the record store and start a session.

    Args:
        config_path (Path | None): Optional override path for ``config.ini``.
            When omitted the data layer searches upward from the current
            working directory.
        tenant_id (str | None): Tenant supplied by the identity collaborator.
            Falls back to ``[Session] TenantID`` from the configuration.

    Returns:
        Session: Session bound to the configured workbook.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = data_manager.open_store(settings)
    session = Session(settings=settings, store=store, tenant_id=tenant_id or settings.tenant_id)
    log.info("Opened session for tenant '%s'", session.tenant_id or "<none>")
    return session


def ensure_schema_version(session: Session) -> None:
    """Refuse to work against a workbook declared with another schema version.

    Raises:
        RuntimeError: If the configured schema version differs from
            ``EXPECTED_SCHEMA_VERSION``.
    """

    if session.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            session.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, session.settings.schema_version)
        )


def close_session(session: Session) -> None:
    """Cancel every subscription the session opened."""

    released = 0
    for subscription in session.open_subscriptions:
        subscription.unsubscribe()
        released += 1
    session._subscriptions.clear()
    log.info("Closed session for tenant '%s' (%d subscriptions released)", session.tenant_id or "<none>", released)


def persist_session(session: Session) -> None:
    """Write the session's workbook back to its data file."""

    session.store.save()


def refresh_session(session: Session) -> Session:
    """Close ``session`` and return a new one over a freshly loaded workbook.

    Unsaved changes are discarded.
    """

    close_session(session)
    store = data_manager.RecordStore(
        data_manager.refresh_workbook(session.settings.data_file),
        data_file=session.settings.data_file,
    )
    log.info("Reloaded workbook '%s'", session.settings.data_file)
    return Session(settings=session.settings, store=store, tenant_id=session.tenant_id)


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class _Repository:
    collection: Collection

    def __init__(self, session: Session) -> None:
        self.session = session

    @property
    def store(self) -> data_manager.RecordStore:
        return self.session.store

    @property
    def tenant_id(self) -> str:
        return self.session.tenant_id or ""

    def _require_ready(self) -> str:
        if not self.session.ready:
            log.warning("Rejected %s write: no tenant signed in", self.collection.value)
            raise PermissionDenied("Sign in before changing data")
        return self.tenant_id

    def _subscribe(
        self,
        convert: Callable[[data_manager.Snapshot], Any],
        on_change: Callable[[Any], None],
        on_error: Optional[Callable[[Exception], None]],
    ) -> Subscription:
        def deliver(snapshot: data_manager.Snapshot) -> None:
            on_change(convert(snapshot))

        if not self.session.ready:
            subscription = Subscription.detached(self.store, self.collection, deliver, on_error)
        else:
            subscription = self.store.subscribe(self.tenant_id, self.collection, deliver, on_error)
        return self.session.track(subscription)


class CustomerRepository(_Repository):
    """Customers of the signed-in tenant."""

    collection = Collection.CUSTOMERS

    def create(self, name: str, phone: str = "", email: str = "", address: str = "") -> Customer:
        """Register a customer.

        Raises:
            ValidationError: If ``name`` is empty.
            PermissionDenied: If no tenant is signed in.
        """

        data = {
            "name": _require_text(name, "Customer name"),
            "phone": _text(phone).strip(),
            "email": _text(email).strip(),
            "address": _text(address).strip(),
        }
        tenant_id = self._require_ready()
        customer_id = self.store.create(tenant_id, self.collection, data)
        log.info("Added customer '%s' (%s)", data["name"], customer_id)
        return customer_from_document(customer_id, data)

    def get(self, customer_id: str) -> Customer:
        """Fetch one customer.

        Raises:
            NotFound: If the customer does not exist, or no tenant is signed in.
        """

        if not self.session.ready:
            raise NotFound(f"Unknown customer id: {customer_id}")
        data = self.store.get(self.tenant_id, self.collection, customer_id)
        return customer_from_document(customer_id, data)

    def list(self) -> List[Customer]:
        if not self.session.ready:
            return []
        return [customer_from_document(doc.id, doc.data) for doc in self.store.snapshot(self.tenant_id, self.collection)]

    def update(self, customer_id: str, **changes: Any) -> Customer:
        """Edit some customer fields and return the stored result.

        Raises:
            ValidationError: For unknown fields or an emptied name.
            NotFound: If the customer has been deleted meanwhile.
        """

        unknown = set(changes) - set(CUSTOMER_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown customer field: {', '.join(sorted(unknown))}")
        partial = {CUSTOMER_FIELDS[name]: _text(value).strip() for name, value in changes.items()}
        if "name" in partial:
            partial["name"] = _require_text(partial["name"], "Customer name")
        tenant_id = self._require_ready()
        self.store.update(tenant_id, self.collection, customer_id, partial)
        return self.get(customer_id)

    def delete(self, customer_id: str) -> None:
        """Delete a customer permanently; their jobs are left as they are."""

        tenant_id = self._require_ready()
        self.store.delete(tenant_id, self.collection, customer_id)

    def subscribe(
        self,
        on_change: Callable[[List[Customer]], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> Subscription:
        """Receive the full customer list now and after every change."""

        return self._subscribe(
            lambda snapshot: [customer_from_document(doc.id, doc.data) for doc in snapshot],
            on_change,
            on_error,
        )


class ProfileRepository(_Repository):
    """The tenant's singleton company profile document.

    Company fields and the tax rate are merge-written field by field. The
    workflow option editor instead reads, modifies and writes back the whole
    ``jobWorkflowOptions`` mapping, so two sessions editing option lists at
    the same time overwrite each other wholesale: the later write wins.
    """

    collection = Collection.PROFILE

    def get(self) -> TenantProfile:
        default_rate = self.session.settings.default_tax_rate
        if not self.session.ready:
            return profile_from_document(None, default_tax_rate=default_rate)
        try:
            data = self.store.get(self.tenant_id, self.collection, PROFILE_DOCUMENT_ID)
        except NotFound:
            data = None
        return profile_from_document(data, default_tax_rate=default_rate)

    def update_company(
        self,
        *,
        company_name: Optional[str] = None,
        address: Optional[str] = None,
        phone: Optional[str] = None,
        email: Optional[str] = None,
        sales_tax_rate: Any = None,
    ) -> TenantProfile:
        """Merge the given company fields into the profile.

        Only arguments that are not ``None`` are written, so concurrent edits
        of other profile fields survive.

        Raises:
            ValidationError: If ``sales_tax_rate`` is negative.
        """

        values = {"company_name": company_name, "address": address, "phone": phone, "email": email}
        partial: Dict[str, Any] = {
            COMPANY_FIELDS[name]: _text(value).strip() for name, value in values.items() if value is not None
        }
        if sales_tax_rate is not None:
            partial["salesTaxRate"] = _require_nonnegative(sales_tax_rate, "Sales tax rate")
        if not partial:
            return self.get()
        tenant_id = self._require_ready()
        self.store.set_merge(tenant_id, self.collection, PROFILE_DOCUMENT_ID, partial)
        log.info("Updated company profile (%s)", ", ".join(partial))
        return self.get()

    def set_sales_tax_rate(self, rate: Any) -> TenantProfile:
        return self.update_company(sales_tax_rate=rate)

    def list_options(self, workflow_list: WorkflowList | str) -> Tuple[WorkflowOption, ...]:
        return self.get().options(workflow_list)

    def add_option(
        self,
        workflow_list: WorkflowList | str,
        name: str,
        *,
        cost: Any = 0,
        quantity: Any = 1,
        discount_type: Any = DiscountType.NONE,
        discount_value: Any = 0,
    ) -> WorkflowOption:
        """Append an option to the end of one workflow list.

        Raises:
            ValidationError: If the name is empty or a price is negative.
            PermissionDenied: If no tenant is signed in.
        """

        kind = WorkflowList(workflow_list)
        option = WorkflowOption(
            id=data_manager.generate_document_id(),
            name=_require_text(name, "Option name"),
            cost=_require_nonnegative(cost, "Option cost"),
            quantity=money.parse_quantity(quantity),
            discount_type=coerce_discount_type(discount_type),
            discount_value=_require_nonnegative(discount_value, "Option discount"),
        )
        self._require_ready()
        options = self._current_options()
        options[kind] = [*options[kind], option]
        self._write_options(options)
        log.info("Added %s option '%s' (%s)", kind.value, option.name, option.id)
        return option

    def update_option(self, workflow_list: WorkflowList | str, option_id: str, **changes: Any) -> WorkflowOption:
        """Edit an option addressed by its stable id.

        Raises:
            NotFound: If no option with ``option_id`` is in the list anymore.
            ValidationError: For unknown fields, an empty name or a negative
                price.
        """

        kind = WorkflowList(workflow_list)
        allowed = {"name", "cost", "quantity", "discount_type", "discount_value"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"Unknown option field: {', '.join(sorted(unknown))}")
        cleaned: Dict[str, Any] = {}
        if "name" in changes:
            cleaned["name"] = _require_text(changes["name"], "Option name")
        if "cost" in changes:
            cleaned["cost"] = _require_nonnegative(changes["cost"], "Option cost")
        if "quantity" in changes:
            cleaned["quantity"] = money.parse_quantity(changes["quantity"])
        if "discount_type" in changes:
            cleaned["discount_type"] = coerce_discount_type(changes["discount_type"])
        if "discount_value" in changes:
            cleaned["discount_value"] = _require_nonnegative(changes["discount_value"], "Option discount")

        self._require_ready()
        options = self._current_options()
        position = self._position(options[kind], option_id, kind)
        updated = replace(options[kind][position], **cleaned)
        options[kind][position] = updated
        self._write_options(options)
        log.info("Updated %s option '%s'", kind.value, option_id)
        return updated

    def delete_option(self, workflow_list: WorkflowList | str, option_id: str) -> None:
        """Remove an option; the options after it move up one place.

        Raises:
            NotFound: If no option with ``option_id`` is in the list anymore.
        """

        kind = WorkflowList(workflow_list)
        self._require_ready()
        options = self._current_options()
        position = self._position(options[kind], option_id, kind)
        del options[kind][position]
        self._write_options(options)
        log.info("Deleted %s option '%s'", kind.value, option_id)

    def subscribe(
        self,
        on_change: Callable[[TenantProfile], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> Subscription:
        """Receive the profile now and after every profile write."""

        default_rate = self.session.settings.default_tax_rate

        def convert(snapshot: data_manager.Snapshot) -> TenantProfile:
            data = next((doc.data for doc in snapshot if doc.id == PROFILE_DOCUMENT_ID), None)
            return profile_from_document(data, default_tax_rate=default_rate)

        return self._subscribe(convert, on_change, on_error)

    def _current_options(self) -> Dict[WorkflowList, List[WorkflowOption]]:
        profile = self.get()
        return {kind: list(profile.options(kind)) for kind in WorkflowList}

    def _write_options(self, options: Mapping[WorkflowList, Sequence[WorkflowOption]]) -> None:
        self.store.set_merge(
            self.tenant_id,
            self.collection,
            PROFILE_DOCUMENT_ID,
            {WORKFLOW_OPTIONS_FIELD: options_to_document(options)},
        )

    @staticmethod
    def _position(options: Sequence[WorkflowOption], option_id: str, kind: WorkflowList) -> int:
        for index, option in enumerate(options):
            if option.id == option_id:
                return index
        log.warning("Workflow option '%s' not found in %s", option_id, kind.value)
        raise NotFound(f"Unknown {kind.value} option: {option_id}")


class JobRepository(_Repository):
    """Jobs (work orders) of the signed-in tenant."""

    collection = Collection.JOBS

    def __init__(self, session: Session, profiles: Optional[ProfileRepository] = None) -> None:
        super().__init__(session)
        self.profiles = profiles or ProfileRepository(session)

    def tax_rate(self) -> float:
        return self.profiles.get().sales_tax_rate

    def create(self, draft: "JobDraft") -> Job:
        """Persist a drafted job.

        A draft whose total is still zero, or that was priced at another tax
        rate than the tenant's current one, goes through the reconciliation
        policy once more. Otherwise its totals, computed or typed by hand, are
        saved as they stand.

        Raises:
            ValidationError: If a price is negative.
            PermissionDenied: If no tenant is signed in.
        """

        _require_nonnegative(draft.cost, "Cost")
        _require_nonnegative(draft.discount_value, "Discount")
        tenant_id = self._require_ready()

        rate = self.tax_rate()
        if draft.total_amount == 0 or draft.tax_rate != rate:
            draft = replace(draft, tax_rate=rate)
            draft.recalculate()
        data = draft.to_document()
        if data.get("date") is None:
            data["date"] = _now()
        stamp = _now()
        data["createdAt"] = stamp
        data["updatedAt"] = stamp

        job_id = self.store.create(tenant_id, self.collection, data)
        log.info(
            "Added job '%s' for customer '%s' (total=%s)",
            job_id,
            data.get("customerName"),
            data.get("totalAmount"),
        )
        return self.get(job_id)

    def get(self, job_id: str) -> Job:
        """Fetch one job with read defaults applied.

        Raises:
            NotFound: If the job does not exist, or no tenant is signed in.
        """

        if not self.session.ready:
            raise NotFound(f"Unknown job id: {job_id}")
        return job_from_document(job_id, self.store.get(self.tenant_id, self.collection, job_id))

    def list(self, *, status: Optional[JobStatus | str] = None) -> List[Job]:
        if not self.session.ready:
            return []
        jobs = [job_from_document(doc.id, doc.data) for doc in self.store.snapshot(self.tenant_id, self.collection)]
        if status is not None:
            wanted = _status(status)
            jobs = [job for job in jobs if job.status is wanted]
        return jobs

    def list_for_customer(self, customer_id: str) -> List[Job]:
        return [job for job in self.list() if job.customer_id == customer_id]

    def update(self, job_id: str, changes: Mapping[str, Any]) -> Job:
        """Apply field edits to a stored job and return the result.

        Changes use attribute names (``cost``, ``total_amount`` ...). When a
        pricing input changes, the override reconciliation policy runs
        against the stored totals, or against totals supplied in the same
        change. Edits touching only ``total_amount`` or ``paid_amount`` are
        stored as given.

        Raises:
            ValidationError: For unknown fields, a bad status or a negative
                price.
            NotFound: If the job has been deleted meanwhile.
            PermissionDenied: If no tenant is signed in.
        """

        partial = job_changes_to_document(changes)
        for name, label in (("cost", "Cost"), ("discountValue", "Discount")):
            if name in partial:
                _require_nonnegative(partial[name], label)
        tenant_id = self._require_ready()

        current = self.store.get(tenant_id, self.collection, job_id)
        if overrides.touches_pricing(partial):
            merged = {**current, **partial}
            outcome = overrides.recalculate(merged, self.tax_rate())
            partial["totalAmount"] = outcome.total_amount
            partial["paidAmount"] = outcome.paid_amount
            if outcome.overwritten:
                log.info("Recomputed totals of job '%s' (total=%s)", job_id, outcome.total_amount)
        partial["updatedAt"] = _now()

        self.store.update(tenant_id, self.collection, job_id, partial)
        return self.get(job_id)

    def set_status(self, job_id: str, status: JobStatus | str) -> Job:
        return self.update(job_id, {"status": status})

    def delete(self, job_id: str) -> None:
        tenant_id = self._require_ready()
        self.store.delete(tenant_id, self.collection, job_id)

    def subscribe(
        self,
        on_change: Callable[[List[Job]], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> Subscription:
        """Receive the full job list now and after every change."""

        return self._subscribe(
            lambda snapshot: [job_from_document(doc.id, doc.data) for doc in snapshot],
            on_change,
            on_error,
        )


# ---------------------------------------------------------------------------
# Drafting
# ---------------------------------------------------------------------------


@dataclass
class JobDraft:
    """Mutable state of a work order being filled in.

    Every :meth:`edit` that touches a pricing input re-runs the override
    reconciliation policy, so the total and paid figures follow the inputs
    until someone types figures of their own.
    """

    customer_id: str = ""
    customer_name: str = ""
    date: Optional[datetime] = None
    status: JobStatus = JobStatus.ACTIVE
    glass_type: str = ""
    damage_type: str = ""
    repair_replacement: str = ""
    cost: float = 0.0
    quantity: int = 1
    discount_type: DiscountType = DiscountType.NONE
    discount_value: float = 0.0
    apply_sales_tax: bool = True
    notes: str = ""
    total_amount: float = 0.0
    paid_amount: float = 0.0
    tax_rate: float = field(default=0.0, repr=False)

    @classmethod
    def for_customer(cls, customer: Customer, *, tax_rate: float = 0.0) -> "JobDraft":
        return cls(customer_id=customer.id, customer_name=customer.name, tax_rate=tax_rate)

    @classmethod
    def from_job(cls, job: Job, *, tax_rate: float = 0.0) -> "JobDraft":
        values = {name: getattr(job, name) for name in JOB_FIELDS}
        return cls(**values, tax_rate=tax_rate)

    def edit(self, **changes: Any) -> Optional[overrides.Reconciliation]:
        """Apply form edits; returns the reconciliation outcome when one ran.

        Raises:
            ValidationError: For unknown fields or an unknown status.
        """

        for name, value in changes.items():
            stored = coerce_job_value(name, value)
            if name == "status":
                stored = JobStatus(stored)
            elif name == "discount_type":
                stored = DiscountType(stored)
            setattr(self, name, stored)
        if overrides.touches_pricing({JOB_FIELDS[name] for name in changes}):
            return self.recalculate()
        return None

    def apply_option(self, workflow_list: WorkflowList | str, option: WorkflowOption) -> None:
        """Pick a workflow option: copy its name and default pricing."""

        target = OPTION_TARGETS[WorkflowList(workflow_list)]
        setattr(self, target, option.name)
        self.edit(
            cost=option.cost,
            quantity=option.quantity,
            discount_type=option.discount_type,
            discount_value=option.discount_value,
        )

    def recalculate(self) -> overrides.Reconciliation:
        outcome = overrides.recalculate(self.to_document(), self.tax_rate)
        self.total_amount = outcome.total_amount
        self.paid_amount = outcome.paid_amount
        return outcome

    def to_document(self) -> Dict[str, Any]:
        return job_changes_to_document({name: getattr(self, name) for name in JOB_FIELDS})

    def preview(self, job_id: str = "") -> Job:
        """Return the draft as an unsaved :class:`Job` for previews."""

        return job_from_document(job_id, self.to_document())


# ---------------------------------------------------------------------------
# Live collections and notifications
# ---------------------------------------------------------------------------


class LiveCollection(Generic[T]):
    """Subscriber-side holder of the latest snapshot of a repository.

    A failing delivery keeps the last good items and records a notice for
    the front end to show, rather than clearing what is on screen.
    """

    def __init__(self) -> None:
        self.items: Any = None
        self.notice: Optional[str] = None
        self.subscription: Optional[Subscription] = None

    @classmethod
    def watch(cls, repository: Any) -> "LiveCollection[T]":
        live = cls()
        live.subscription = repository.subscribe(live.on_change, live.on_error)
        return live

    def on_change(self, items: T) -> None:
        self.items = items
        self.notice = None

    def on_error(self, error: Exception) -> None:
        self.notice = describe_error(error)
        log.warning("Live update failed, keeping last snapshot: %s", error)

    def close(self) -> None:
        if self.subscription is not None:
            self.subscription.unsubscribe()

    def __enter__(self) -> "LiveCollection[T]":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def describe_error(error: Exception) -> str:
    """Turn an error into the single line shown to a person."""

    if isinstance(error, ValidationError):
        return str(error)
    if isinstance(error, NotFound):
        return f"That record no longer exists. ({error})"
    if isinstance(error, PermissionDenied):
        return f"Access denied: {error}"
    if isinstance(error, StoreUnavailable):
        return f"The data store is unavailable right now: {error}"
    if isinstance(error, RecordStoreError):
        return f"Data store error: {error}"
    if isinstance(error, FileNotFoundError):
        return str(error)
    return f"Unexpected error: {error}"


__all__ = [
    "ValidationError",
    "NotFound",
    "PermissionDenied",
    "StoreUnavailable",
    "Session",
    "Customer",
    "Job",
    "WorkflowOption",
    "TenantProfile",
    "CustomerRepository",
    "JobRepository",
    "ProfileRepository",
    "JobDraft",
    "LiveCollection",
    "open_session",
    "close_session",
    "persist_session",
    "refresh_session",
    "ensure_schema_version",
    "describe_error",
]
