"""
Pydantic models for the cart snapshot, remote rows, purchases, requests, and responses.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class Product(BaseModel):
    """Catalog product"""
    id: str = Field(..., description="Product identifier")
    name: str = Field(..., description="Display name")
    description: str = Field("", description="Product description")
    price: Decimal = Field(..., ge=0, description="Current unit price")
    image_url: str = Field("", description="Product image reference")
    category: Optional[str] = Field(None, description="Product category")


class CartLine(BaseModel):
    """One product's quantity entry within a cart"""
    product_id: str = Field(..., description="Product identifier")
    name: str = Field(..., description="Product name at time of add")
    unit_price: Decimal = Field(..., ge=0, description="Price at time of add")
    quantity: int = Field(..., ge=1, description="Item quantity")
    image_ref: str = Field("", description="Product image reference")
    category: Optional[str] = Field(None, description="Product category")

    @classmethod
    def from_product(cls, product: Product, quantity: int) -> "CartLine":
        return cls(
            product_id=product.id,
            name=product.name,
            unit_price=product.price,
            quantity=quantity,
            image_ref=product.image_url,
            category=product.category,
        )

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class CartRow(BaseModel):
    """Remote cart row for one user"""
    id: str = Field(..., description="Row identifier")
    product_id: str = Field(..., description="Product identifier")
    quantity: int = Field(..., description="Stored quantity")


class PurchaseRecord(BaseModel):
    """Immutable record of one purchased cart line"""
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = Field(None, description="Assigned by the remote store")
    order_id: Optional[str] = Field(None, description="Checkout the record belongs to")
    user_id: str = Field(..., description="Purchasing user")
    product_id: str = Field(..., description="Product identifier")
    quantity: int = Field(..., ge=1, description="Purchased quantity")
    total_price: Decimal = Field(..., description="unit_price x quantity")
    purchase_date: datetime = Field(..., description="Time of checkout")

    @classmethod
    def from_line(
        cls,
        user_id: str,
        line: CartLine,
        purchase_date: datetime,
        order_id: Optional[str] = None
    ) -> "PurchaseRecord":
        return cls(
            order_id=order_id,
            user_id=user_id,
            product_id=line.product_id,
            quantity=line.quantity,
            total_price=line.line_total,
            purchase_date=purchase_date,
        )


class Identity(BaseModel):
    """Session identity: anonymous when user_id is None"""
    model_config = ConfigDict(frozen=True)

    user_id: Optional[str] = None

    @classmethod
    def anonymous(cls) -> "Identity":
        return cls()

    @classmethod
    def authenticated(cls, user_id: str) -> "Identity":
        return cls(user_id=user_id)

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"


class MutationStatus(str, Enum):
    APPLIED = "applied"
    APPLIED_LOCAL_ONLY = "applied_local_only"


class MutationResult(BaseModel):
    """Outcome of a cart mutation against its backing store"""
    status: MutationStatus = Field(..., description="Whether the backing store accepted the change")
    reason: Optional[str] = Field(None, description="Why the change is only local")

    @classmethod
    def applied(cls) -> "MutationResult":
        return cls(status=MutationStatus.APPLIED)

    @classmethod
    def local_only(cls, reason: str) -> "MutationResult":
        return cls(status=MutationStatus.APPLIED_LOCAL_ONLY, reason=reason)

    @property
    def synced(self) -> bool:
        return self.status == MutationStatus.APPLIED


class HydrationResult(BaseModel):
    """Outcome of loading the snapshot from its backing store"""
    source: Literal["local", "remote"]
    applied: bool = True
    stale: bool = False
    warning: Optional[str] = None
    line_count: int = 0
    generation: int = 0


class FailedLine(BaseModel):
    """Cart line whose purchase record could not be stored"""
    line: CartLine
    reason: str


class CheckoutResult(BaseModel):
    """Outcome of a checkout"""
    order_id: str = Field(..., description="Generated order identifier")
    user_id: str = Field(..., description="Purchasing user")
    recorded: List[PurchaseRecord] = Field(default_factory=list, description="Stored purchase records")
    failed: List[FailedLine] = Field(default_factory=list, description="Lines that were not recorded")
    total: Decimal = Field(Decimal("0"), description="Total of the recorded lines")
    message: str = Field(..., description="Checkout status message")

    @property
    def succeeded(self) -> bool:
        return not self.failed


class SearchResult(BaseModel):
    """Products matching a search query"""
    query: str
    refined_query: Optional[str] = None
    products: List[Product] = Field(default_factory=list)


class PurchaseHistoryEntry(BaseModel):
    """Purchase record joined with its catalog product"""
    record: PurchaseRecord
    product: Optional[Product] = None


class CartItemRequest(BaseModel):
    """Request model for adding cart items"""
    product_id: str = Field(..., description="Product identifier")
    quantity: int = Field(1, description="Quantity to add")


class UpdateQuantityRequest(BaseModel):
    """Request model for setting a cart line quantity"""
    quantity: int = Field(..., description="New quantity; 0 or less removes the line")


class SignInRequest(BaseModel):
    """Request model for signing a session in"""
    user_id: str = Field(..., description="Authenticated user identifier")


class CartResponse(BaseModel):
    """Response model for cart retrieval"""
    session_state: SessionState = Field(..., description="Identity state of the session")
    user_id: Optional[str] = Field(None, description="Signed-in user, if any")
    items: List[CartLine] = Field(default_factory=list, description="Cart lines")
    total_items: int = Field(0, description="Total number of items")
    total_price: Decimal = Field(Decimal("0"), description="Total cart price")


class MutationResponse(BaseModel):
    """Response model for cart mutations"""
    success: bool = True
    sync: MutationResult
    cart: CartResponse
    latency_ms: float = 0.0


class SessionResponse(BaseModel):
    """Response model for identity transitions"""
    hydration: Optional[HydrationResult] = None
    cart: CartResponse


class CheckoutResponse(BaseModel):
    """Response model for checkout"""
    order_id: str = Field(..., description="Generated order identifier")
    total: Decimal = Field(..., description="Order total")
    items: List[PurchaseRecord] = Field(..., description="Recorded purchases")
    failed_items: List[FailedLine] = Field(default_factory=list, description="Lines still in the cart")
    message: str = Field(..., description="Checkout status message")
    cart: CartResponse
