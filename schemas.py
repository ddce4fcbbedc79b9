"""
Database Schemas for the Vault billing API

Each document model maps to a MongoDB collection (clients, invoices, users,
settings). Projects and milestones are embedded in their client document.
Field names follow the camelCase used by the portal frontend.
"""
from typing import Optional, Literal, List, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, EmailStr


Role = Literal["admin", "client"]
ClientStatus = Literal["Active", "Inactive"]
ProjectStatus = Literal["Active", "Completed"]
MilestoneStatus = Literal["pending", "Paid"]
InvoiceStatus = Literal["Unpaid", "Sent", "Paid"]

FULL_PAYMENT = "Full Payment"
MILESTONE_PAYMENT = "Milestone"


class Milestone(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    name: str = ""
    amount: float = 0
    dueDate: Optional[str] = Field(None, description="ISO date; milestone is locked before it")
    status: MilestoneStatus = "pending"
    paidDate: Optional[str] = None
    paymentMethod: Optional[str] = None


class Project(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    name: str = ""
    budget: float = 0
    description: str = ""
    type: str = "full"
    paymentType: str = MILESTONE_PAYMENT
    status: ProjectStatus = "Active"
    currentStep: int = Field(1, ge=1)
    milestones: List[Milestone] = Field(default_factory=list)


class Client(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    email: Optional[EmailStr] = None
    portalEmail: Optional[str] = None
    password: Optional[str] = Field(None, description="Initial portal password; only its hash is stored")
    status: ClientStatus = "Active"
    sendAutomationEmail: bool = False
    projects: List[Project] = Field(default_factory=list)


class LineItem(BaseModel):
    name: str
    qty: float = 1
    price: float = 0


class Invoice(BaseModel):
    model_config = ConfigDict(extra="allow")

    invoiceId: Optional[str] = None
    projectId: Optional[str] = None
    milestoneId: Optional[str] = None
    projectTitle: str = ""
    adminEmail: Optional[str] = None
    clientEmail: Optional[str] = None
    clientName: str = ""
    currency: Optional[str] = None
    items: List[LineItem] = Field(default_factory=list)
    grandTotal: Optional[float] = None
    receivedAmount: float = 0
    remainingDue: Optional[float] = None
    status: InvoiceStatus = "Unpaid"
    paymentLink: Optional[str] = None


class InvoiceSummary(BaseModel):
    """Denormalized projection of an invoice embedded in a user document."""

    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

    id: Any = Field(..., alias="_id")
    invoiceId: Optional[str] = None
    projectTitle: str = ""
    clientName: str = ""
    grandTotal: float = 0
    status: InvoiceStatus = "Unpaid"
    date: Any = None


class User(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str = Field(..., description="Full name")
    email: str = Field(..., description="Login email, lowercased")
    password: str = Field(..., description="Salted password hash")
    role: Role = Field("client", description="User role")
    clientId: Optional[Any] = Field(None, description="Owning client document for client users")
    about: str = Field("", description="Short profile bio")
    myCreatedInvoices: List[Dict[str, Any]] = Field(default_factory=list)
    invoicesReceived: List[Dict[str, Any]] = Field(default_factory=list)


class SiteSettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    paymentLink: str = ""
    currency: str = "USD"
    businessName: str = ""
    adminEmail: str = ""


# ----------------------------------------------------------------------------
# Request payloads
# ----------------------------------------------------------------------------

class LoginRequest(BaseModel):
    email: str
    password: str
    role: Role = "client"


class AdminCreateRequest(BaseModel):
    name: str = ""
    email: EmailStr
    password: str
    role: Role = "admin"


class DeployProjectRequest(BaseModel):
    clientId: str
    title: str
    totalBudget: float = 0
    description: str = ""
    type: str = "full"
    paymentType: str = MILESTONE_PAYMENT
    currency: Optional[str] = None
    adminEmail: Optional[str] = None
    milestones: List[Milestone] = Field(default_factory=list)


class MilestonePaymentRequest(BaseModel):
    projectId: str
    invoiceId: str = Field(..., description="Milestone id within the project")
    amount: float = 0
    method: Optional[str] = None
    date: Optional[str] = None
    clientEmail: Optional[str] = None
    clientName: Optional[str] = None
    projectName: Optional[str] = None
    milestoneName: Optional[str] = None


class ProjectStatusRequest(BaseModel):
    status: ProjectStatus


class BulkDeleteRequest(BaseModel):
    ids: List[str]


class RebuildSummariesRequest(BaseModel):
    email: str


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = None
    about: Optional[str] = None
