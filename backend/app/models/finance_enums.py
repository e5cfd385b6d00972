"""
Finance enumerations.

Work order status, technician payment type, the customer service-type
classification used for pricing, and the closed set of settlement
failure reasons.
"""

import enum


class WorkOrderStatus(str, enum.Enum):
    """Work order lifecycle status (values as stored by dispatch)."""
    COMPLETED = "zavrsen"
    NOT_COMPLETED = "nezavrsen"
    CANCELLED = "otkazan"
    POSTPONED = "odlozen"


class PaymentType(str, enum.Enum):
    """How a technician is paid."""
    PER_JOB = "po_statusu"  # Paid per job at the configured price
    FIXED_SALARY = "plata"  # Monthly salary; job earnings accrue towards it


class CustomerStatus(str, enum.Enum):
    """
    Service-type classification chosen by the technician on the evidence record.

    Values are the exact descriptions stored in evidence records and used as
    keys of the price lists.
    """
    HFC_BUILDING = (
        "Priključenje korisnika na HFC KDS mreža u zgradi sa instalacijom CPE opreme "
        "(izrada kompletne instalacije od RO do korisnika sa instalacijom kompletne CPE opreme)"
    )
    HFC_HOUSE = (
        "Priključenje korisnika na HFC KDS mreža u privatnim kućama sa instalacijom CPE opreme "
        "(izrada instalacije od PM-a do korisnika sa instalacijom kompletne CPE opreme)"
    )
    GPON_HOUSE = (
        "Priključenje korisnika na GPON mrežu u privatnim kućama "
        "(izrada kompletne instalacije od PM do korisnika sa instalacijom kompletne CPE opreme)"
    )
    GPON_BUILDING = (
        "Priključenje korisnika na GPON mrežu u zgradi "
        "(izrada kompletne instalacije od PM do korisnika sa instalacijom kompletne CPE opreme)"
    )
    EXISTING_WITH_MOUNTING = "Radovi kod postojećeg korisnika na unutrašnjoj instalaciji sa montažnim radovima"
    EXISTING_WITHOUT_MOUNTING = "Radovi kod postojećeg korisnika na unutrašnjoj instalaciji bez montažnih radova"
    NEW_CUSTOMER = "Nov korisnik"
    ASTRA_WIFI_NEW = (
        "Priključenje novog korisnika WiFi tehnologijom (postavljanje nosača antene, postavljanje i "
        "usmeravanje antene ka baznoj stanici sa postavljanjem napajanja za antenu, postavljanje rutera "
        "i jednog uređaja za televiziju) - ASTRA TELEKOM"
    )
    ASTRA_SECOND_DEVICE = "Dodavanje drugog uređaja ili dorada - ASTRA TELEKOM"
    ASTRA_DISMANTLING = "Demontaža postojeće opreme kod korisnika (po korisniku) - ASTRA TELEKOM"
    ASTRA_INTERVENTION = "Intervencija kod korisnika - ASTRA TELEKOM"
    ASTRA_GPON_NEW = (
        "Priključenje korisnika GPON tehnologijom (povezivanje svih uređaja u okviru paketa) - ASTRA TELEKOM"
    )

    @property
    def label(self) -> str:
        return CUSTOMER_STATUS_LABELS[self]

    @classmethod
    def parse(cls, value):
        """Return the member for a stored value, or None when unknown/empty."""
        if value is None or isinstance(value, cls):
            return value
        value = str(value).strip()
        if not value:
            return None
        try:
            return cls(value)
        except ValueError:
            return None


CUSTOMER_STATUS_LABELS = {
    CustomerStatus.HFC_BUILDING: "HFC Zgrada",
    CustomerStatus.HFC_HOUSE: "HFC Kuća",
    CustomerStatus.GPON_HOUSE: "GPON Kuća",
    CustomerStatus.GPON_BUILDING: "GPON Zgrada",
    CustomerStatus.EXISTING_WITH_MOUNTING: "Sa Montažom",
    CustomerStatus.EXISTING_WITHOUT_MOUNTING: "Bez Montaže",
    CustomerStatus.NEW_CUSTOMER: "Nov Korisnik",
    CustomerStatus.ASTRA_WIFI_NEW: "ASTRA WiFi Priključenje",
    CustomerStatus.ASTRA_SECOND_DEVICE: "ASTRA Drugi Uređaj",
    CustomerStatus.ASTRA_DISMANTLING: "ASTRA Demontaža",
    CustomerStatus.ASTRA_INTERVENTION: "ASTRA Intervencija",
    CustomerStatus.ASTRA_GPON_NEW: "ASTRA GPON Priključenje",
}


class FailureReason(str, enum.Enum):
    """Why a work order could not be settled."""
    MISSING_WORK_ORDER_EVIDENCE = "MISSING_WORK_ORDER_EVIDENCE"
    MISSING_CUSTOMER_STATUS = "MISSING_CUSTOMER_STATUS"
    MISSING_FINANCIAL_SETTINGS = "MISSING_FINANCIAL_SETTINGS"
    NO_PRICE_FOR_CUSTOMER_STATUS = "NO_PRICE_FOR_CUSTOMER_STATUS"
    NO_TECHNICIANS_ASSIGNED = "NO_TECHNICIANS_ASSIGNED"
    WORK_ORDER_NOT_FOUND = "WORK_ORDER_NOT_FOUND"
    MISSING_TECHNICIAN_PRICING = "MISSING_TECHNICIAN_PRICING"
    PENDING_DISCOUNT_CONFIRMATION = "PENDING_DISCOUNT_CONFIRMATION"
    OTHER_ERROR = "OTHER_ERROR"


class SettlementOutcome(str, enum.Enum):
    """Result of one settlement invocation."""
    CREATED = "CREATED"  # New transaction written
    UPDATED = "UPDATED"  # Existing transaction replaced with different figures
    UNCHANGED = "UNCHANGED"  # Already settled with identical figures; no write
    FAILED = "FAILED"  # Failure record upserted
    PENDING_CONFIRMATION = "PENDING_CONFIRMATION"  # Blocked on a municipality discount
    NOT_ELIGIBLE = "NOT_ELIGIBLE"  # Not completed or not verified; no write
    EXCLUDED = "EXCLUDED"  # Excluded from finances by an admin; no write
