"""
Ride data model shared by the rider and driver apps.

Every entity converts to and from the server's JSON wire shape
(camelCase keys) with ``to_payload()`` / ``from_payload()``.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from tapea.exceptions import ValidationError


# ---------------------- Status vocabularies ----------------------

# Server-side order status
ORDER_PENDING = "pending"
ORDER_ACCEPTED = "accepted"
ORDER_DECLINED = "declined"
ORDER_EXPIRED = "expired"
ORDER_CANCELLED = "cancelled"
ORDER_DRIVER_ENROUTE = "driver_enroute"
ORDER_DRIVER_ARRIVED = "driver_arrived"
ORDER_IN_PROGRESS = "in_progress"
ORDER_COMPLETED = "completed"
ORDER_PAYMENT_PENDING = "payment_pending"
ORDER_PAYMENT_CONFIRMED = "payment_confirmed"
ORDER_PAYMENT_FAILED = "payment_failed"

# Ride lifecycle status (what both apps display)
ENROUTE = "enroute"
ARRIVED = "arrived"
INPROGRESS = "inprogress"
COMPLETED = "completed"
CANCELLED = "cancelled"

RIDE_STATUS_CHOICES = [
    (ENROUTE, "Chauffeur en route"),
    (ARRIVED, "Votre chauffeur est arrivé"),
    (INPROGRESS, "Course en cours"),
    (COMPLETED, "Course terminée"),
    (CANCELLED, "Course annulée"),
]

# Forward-only order; cancelled sits outside it
LIFECYCLE_ORDER = [ENROUTE, ARRIVED, INPROGRESS, COMPLETED]
TERMINAL_RIDE_STATUSES = {COMPLETED, CANCELLED}

ORDER_TO_RIDE_STATUS = {
    ORDER_ACCEPTED: ENROUTE,
    ORDER_DRIVER_ENROUTE: ENROUTE,
    ORDER_DRIVER_ARRIVED: ARRIVED,
    ORDER_IN_PROGRESS: INPROGRESS,
    ORDER_COMPLETED: COMPLETED,
    ORDER_PAYMENT_PENDING: COMPLETED,
    ORDER_PAYMENT_CONFIRMED: COMPLETED,
    ORDER_PAYMENT_FAILED: COMPLETED,
    ORDER_CANCELLED: CANCELLED,
}

ROLE_DRIVER = "driver"
ROLE_CLIENT = "client"
ROLES = (ROLE_DRIVER, ROLE_CLIENT)

PAYMENT_CASH = "cash"
PAYMENT_CARD = "card"
PAYMENT_METHODS = (PAYMENT_CASH, PAYMENT_CARD)

ADDRESS_TYPES = ("pickup", "stop", "destination")


def ride_status_from_order(order_status: Optional[str], default: str = ENROUTE) -> str:
    """Map a server order status onto the ride lifecycle vocabulary."""
    return ORDER_TO_RIDE_STATUS.get(order_status or "", default)


# ---------------------- Value objects ----------------------

@dataclass(frozen=True)
class AddressField:
    """One pickup / stop / destination entry."""
    id: str
    value: str
    type: str
    place_id: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "id": self.id,
            "value": self.value,
            "placeId": self.place_id,
            "type": self.type,
        }
        # Coordinates are omitted rather than sent as null
        if self.lat is not None:
            payload["lat"] = self.lat
        if self.lng is not None:
            payload["lng"] = self.lng
        return payload

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "AddressField":
        return cls(
            id=str(data.get("id", "")),
            value=data.get("value", ""),
            type=data.get("type", "stop"),
            place_id=data.get("placeId"),
            lat=data.get("lat"),
            lng=data.get("lng"),
        )


@dataclass(frozen=True)
class Supplement:
    id: str
    name: str
    price: float
    quantity: int = 0

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "icon": self.id,
            "price": self.price,
            "quantity": self.quantity,
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "Supplement":
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name", ""),
            price=data.get("price", 0),
            quantity=int(data.get("quantity", 0)),
        )


@dataclass(frozen=True)
class RideOption:
    """A ride class from the catalogue (see ``tapea.rides.pricing``)."""
    id: str
    title: str
    price: float
    price_per_km: float

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "price": self.price,
            "pricePerKm": self.price_per_km,
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "RideOption":
        return cls(
            id=data.get("id", ""),
            title=data.get("title", ""),
            price=data.get("price", data.get("basePrice", 0)),
            price_per_km=data.get("pricePerKm", 0),
        )


@dataclass(frozen=True)
class RouteInfo:
    distance: float
    duration: str

    def to_payload(self) -> Dict[str, Any]:
        return {"distance": self.distance, "duration": self.duration}

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "RouteInfo":
        return cls(distance=data.get("distance", 0), duration=data.get("duration", ""))


@dataclass(frozen=True)
class DriverSummary:
    """Assigned driver as returned with the ride detail."""
    id: str
    first_name: str = ""
    last_name: str = ""
    phone: Optional[str] = None
    vehicle_model: Optional[str] = None
    vehicle_color: Optional[str] = None
    vehicle_plate: Optional[str] = None

    @property
    def name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "phone": self.phone,
            "vehicleModel": self.vehicle_model,
            "vehicleColor": self.vehicle_color,
            "vehiclePlate": self.vehicle_plate,
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "DriverSummary":
        return cls(
            id=str(data.get("id", "")),
            first_name=data.get("firstName", ""),
            last_name=data.get("lastName", ""),
            phone=data.get("phone"),
            vehicle_model=data.get("vehicleModel"),
            vehicle_color=data.get("vehicleColor"),
            vehicle_plate=data.get("vehiclePlate"),
        )


@dataclass(frozen=True)
class AssignedDriver:
    """Payload of ``order:driver:assigned``."""
    driver_id: str
    name: str
    session_id: str


# ---------------------- Ride request ----------------------

@dataclass(frozen=True)
class RideRequest:
    """
    Client-originated ride draft.

    Frozen: a request is submitted once; re-submitting means building a new one.
    """
    addresses: Tuple[AddressField, ...]
    ride_option: RideOption
    passengers: int
    total_price: float
    driver_earnings: float
    payment_method: str = PAYMENT_CASH
    supplements: Tuple[Supplement, ...] = ()
    selected_card_id: Optional[str] = None
    scheduled_time: Optional[str] = None
    is_advance_booking: bool = False
    route_info: Optional[RouteInfo] = None
    client_name: str = "Client"
    client_phone: str = ""

    @property
    def pickup(self) -> Optional[AddressField]:
        return next((a for a in self.addresses if a.type == "pickup"), None)

    @property
    def destination(self) -> Optional[AddressField]:
        return next((a for a in self.addresses if a.type == "destination"), None)

    def validate(self, capabilities=None):
        """Raise ValidationError when the draft cannot be submitted."""
        if self.pickup is None or not self.pickup.value:
            raise ValidationError("Adresse de départ requise")
        if self.destination is None or not self.destination.value:
            raise ValidationError("Adresse d'arrivée requise")
        if self.passengers < 1:
            raise ValidationError("Au moins un passager est requis")
        if self.payment_method not in PAYMENT_METHODS:
            raise ValidationError(f"Moyen de paiement inconnu: {self.payment_method}")
        if self.payment_method == PAYMENT_CARD:
            if not self.selected_card_id:
                raise ValidationError("Sélectionnez une carte bancaire")
            if capabilities is not None and not capabilities.has_native_payments:
                raise ValidationError("Le paiement par carte n'est pas disponible sur cet appareil")

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "clientName": self.client_name,
            "clientPhone": self.client_phone,
            "addresses": [a.to_payload() for a in self.addresses],
            "rideOption": self.ride_option.to_payload(),
            "passengers": self.passengers,
            "supplements": [s.to_payload() for s in self.supplements if s.quantity > 0],
            "paymentMethod": self.payment_method,
            "totalPrice": self.total_price,
            "driverEarnings": self.driver_earnings,
            "isAdvanceBooking": self.is_advance_booking or self.ride_option.id == "reservation",
        }
        if self.route_info is not None:
            payload["routeInfo"] = self.route_info.to_payload()
        if self.payment_method == PAYMENT_CARD and self.selected_card_id:
            payload["selectedCardId"] = self.selected_card_id
        if self.scheduled_time:
            payload["scheduledTime"] = self.scheduled_time
        return payload


# ---------------------- Ride ----------------------

@dataclass
class Ride:
    """Read-mostly client projection of the server's ride (order) entity."""
    id: str
    status: str
    addresses: List[AddressField] = field(default_factory=list)
    ride_option: Optional[RideOption] = None
    passengers: int = 1
    supplements: List[Supplement] = field(default_factory=list)
    payment_method: str = PAYMENT_CASH
    total_price: float = 0
    driver_earnings: float = 0
    route_info: Optional[RouteInfo] = None
    scheduled_time: Optional[str] = None
    is_advance_booking: bool = False
    client_name: str = ""
    client_phone: str = ""
    assigned_driver_id: Optional[str] = None
    driver: Optional[DriverSummary] = None
    created_at: Optional[str] = None
    expires_at: Optional[str] = None

    @property
    def ride_status(self) -> str:
        return ride_status_from_order(self.status)

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "Ride":
        ride_option = data.get("rideOption")
        route_info = data.get("routeInfo")
        driver = data.get("driver")
        return cls(
            id=str(data["id"]),
            status=data.get("status", ORDER_PENDING),
            addresses=[AddressField.from_payload(a) for a in data.get("addresses") or []],
            ride_option=RideOption.from_payload(ride_option) if ride_option else None,
            passengers=int(data.get("passengers", 1)),
            supplements=[Supplement.from_payload(s) for s in data.get("supplements") or []],
            payment_method=data.get("paymentMethod", PAYMENT_CASH),
            total_price=data.get("totalPrice", 0),
            driver_earnings=data.get("driverEarnings", 0),
            route_info=RouteInfo.from_payload(route_info) if route_info else None,
            scheduled_time=data.get("scheduledTime"),
            is_advance_booking=bool(data.get("isAdvanceBooking", False)),
            client_name=data.get("clientName", ""),
            client_phone=data.get("clientPhone", ""),
            assigned_driver_id=data.get("assignedDriverId"),
            driver=DriverSummary.from_payload(driver) if driver else None,
            created_at=data.get("createdAt"),
            expires_at=data.get("expiresAt"),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "addresses": [a.to_payload() for a in self.addresses],
            "rideOption": self.ride_option.to_payload() if self.ride_option else None,
            "passengers": self.passengers,
            "supplements": [s.to_payload() for s in self.supplements],
            "paymentMethod": self.payment_method,
            "totalPrice": self.total_price,
            "driverEarnings": self.driver_earnings,
            "routeInfo": self.route_info.to_payload() if self.route_info else None,
            "scheduledTime": self.scheduled_time,
            "isAdvanceBooking": self.is_advance_booking,
            "clientName": self.client_name,
            "clientPhone": self.client_phone,
            "assignedDriverId": self.assigned_driver_id,
            "driver": self.driver.to_payload() if self.driver else None,
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
        }


@dataclass
class ActiveOrder:
    """Result of the ``/api/orders/active/*`` endpoints."""
    has_active_order: bool
    ride: Optional[Ride] = None
    client_token: Optional[str] = None


# ---------------------- Realtime payloads ----------------------

@dataclass(frozen=True)
class LocationSample:
    """Most recent position of one party; never kept as history."""
    lat: float
    lng: float
    timestamp: int
    heading: Optional[float] = None
    speed: Optional[float] = None
    seq: Optional[int] = None

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "LocationSample":
        return cls(
            lat=float(data["lat"]),
            lng=float(data["lng"]),
            timestamp=int(data.get("timestamp") or 0),
            heading=data.get("heading"),
            speed=data.get("speed"),
            seq=data.get("seq"),
        )


@dataclass(frozen=True)
class PaymentOutcome:
    """Result of the payment handshake, kept only while it is displayed."""
    status: str  # "confirmed" | "failed"
    amount: float
    method: str
    card_brand: Optional[str] = None
    card_last4: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.status == "confirmed"

    def summary(self) -> str:
        if self.method == PAYMENT_CARD and self.card_last4:
            brand = (self.card_brand or "Carte").capitalize()
            return f"{brand} •••• {self.card_last4}"
        if self.method == PAYMENT_CARD:
            return "Carte"
        return "Espèces"
