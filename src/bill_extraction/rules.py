"""Static keyword tables and regex patterns for bill extraction.

All tables live on a frozen ``ExtractionRules`` instance so extractors can
take a smaller fixture set in tests. ``DEFAULT_RULES`` holds the production
tables and is built once at import.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from bill_extraction.models import BillCategory

MONTH_NAMES = (
    r"(?:jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|jun(?:e)?|jul(?:y)?"
    r"|aug(?:ust)?|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)"
)
_MONTH_DAY_OPT_YEAR = rf"{MONTH_NAMES}\.?\s+\d{{1,2}}(?:st|nd|rd|th)?(?:,?\s*\d{{4}})?"
_MONTH_DAY_YEAR = rf"{MONTH_NAMES}\.?\s+\d{{1,2}}(?:st|nd|rd|th)?,?\s*\d{{4}}"
_NUMERIC_FULL = r"\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4}"
_NUMERIC_OPT_YEAR = r"\d{1,2}[/\-]\d{1,2}(?:[/\-]\d{2,4})?"
_ISO = r"\d{4}-\d{2}-\d{2}"


@dataclass(frozen=True)
class WeightedPattern:
    pattern: re.Pattern[str]
    score: float


@dataclass(frozen=True)
class DatePattern:
    """A due-date regex. Lower ``priority`` is more specific."""

    name: str
    priority: int
    pattern: re.Pattern[str]
    relative_days: bool = False


@dataclass(frozen=True)
class SenderPattern:
    pattern: re.Pattern[str]
    category: BillCategory
    name: str | None = None


@dataclass(frozen=True)
class ProductRefinement:
    base_name: str
    pattern: re.Pattern[str]
    refined_name: str
    category: BillCategory | None = None


@dataclass(frozen=True)
class ExtractionRules:
    """Immutable lookup tables consumed by the extractors."""

    skip_keywords: tuple[str, ...]
    promotional_keywords: tuple[str, ...]
    strong_promo_subject_indicators: tuple[str, ...]
    bill_signals: tuple[str, ...]
    bill_keywords_high: tuple[str, ...]
    bill_keywords_medium: tuple[str, ...]
    bill_keywords_low: tuple[str, ...]
    amount_keyword_scores: tuple[WeightedPattern, ...]
    date_keyword_scores: tuple[WeightedPattern, ...]
    total_amount_patterns: tuple[re.Pattern[str], ...]
    minimum_amount_patterns: tuple[re.Pattern[str], ...]
    general_amount_patterns: tuple[re.Pattern[str], ...]
    date_patterns: tuple[DatePattern, ...]
    sender_patterns: tuple[SenderPattern, ...]
    product_refinements: tuple[ProductRefinement, ...]
    payment_link_keywords: tuple[WeightedPattern, ...]
    payment_link_junk_patterns: tuple[re.Pattern[str], ...]
    url_shorteners: frozenset[str]
    known_biller_domains: frozenset[str]
    bill_subject_keywords: tuple[str, ...]
    promotional_filter_keywords: tuple[str, ...]
    calendar_senders: tuple[str, ...]
    base_company_aliases: tuple[tuple[str, str], ...]
    account_last4_patterns: tuple[re.Pattern[str], ...]
    recurrence_keywords: tuple[tuple[re.Pattern[str], str], ...]
    monthly_categories: frozenset[BillCategory] = field(
        default_factory=lambda: frozenset(
            {
                BillCategory.UTILITIES,
                BillCategory.SUBSCRIPTION,
                BillCategory.RENT,
                BillCategory.PHONE,
                BillCategory.INTERNET,
                BillCategory.CREDIT_CARD,
                BillCategory.LOAN,
                BillCategory.INSURANCE,
            }
        )
    )


def _i(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


def _weighted(*pairs: tuple[str, float]) -> tuple[WeightedPattern, ...]:
    return tuple(WeightedPattern(_i(p), s) for p, s in pairs)


def _sender(pattern: str, category: BillCategory, name: str | None = None) -> SenderPattern:
    return SenderPattern(_i(pattern), category, name)


def _refine(
    base: str, pattern: str, refined: str, category: BillCategory | None = None
) -> ProductRefinement:
    return ProductRefinement(base, _i(pattern), refined, category)


SKIP_KEYWORDS = (
    "you canceled",
    "you cancelled",
    "payment canceled",
    "payment cancelled",
    "autopay canceled",
    "autopay cancelled",
    "automatic payment canceled",
    "automatic payment cancelled",
    "cancellation confirmed",
    "successfully canceled",
    "successfully cancelled",
    "payment received",
    "payment successful",
    "thank you for your payment",
    "payment confirmation",
    "payment processed",
    "we received your payment",
    "your payment has been",
    "transaction complete",
    "paid in full",
)

PROMOTIONAL_KEYWORDS = (
    "offer awaits",
    "welcome offer",
    "special offer",
    "limited time",
    "exclusive offer",
    "discount",
    "coupon",
    "promo code",
    "promocode",
    "% off",
    "off your",
    "deal",
    "sale",
    "flash sale",
    "clearance",
    "free shipping",
    "free gift",
    "earn rewards",
    "bonus points",
    "cashback",
    "cash back",
    "redeem",
    "claim your",
    "don't miss",
    "act now",
    "hurry",
    "expires soon",
    "last chance",
    "still thinking",
    "left in cart",
    "cart reminder",
    "forgot something",
    "come back",
    "we miss you",
    "unsubscribe",
    "marketing",
    "newsletter",
    "weekly deals",
    "daily deals",
    "price drop",
    "save up to",
    "buy now",
    "shop now",
    "order now",
)

STRONG_PROMO_SUBJECT_INDICATORS = (
    "% off",
    "discount",
    "coupon",
    "deal",
    "sale",
    "free gift",
    "promo code",
    "don't miss",
    "limited time",
    "act now",
    "hurry",
    "left in cart",
    "still thinking",
    "come back",
    "we miss you",
)

BILL_SIGNALS = (
    "amount due",
    "minimum payment",
    "payment due",
    "due date",
    "statement",
    "invoice",
    "billing",
    "past due",
    "balance due",
    "total due",
    "autopay",
    "auto pay",
    "automatic payment",
    "scheduled payment",
    "new balance",
    "current balance",
)

BILL_KEYWORDS_HIGH = (
    "amount due",
    "payment due",
    "bill is ready",
    "your bill",
    "invoice",
    "statement ready",
    "statement is ready",
    "pay now",
    "due date",
    "minimum payment",
    "account balance",
    "total due",
    "balance due",
    "renews soon",
    "will renew",
    "subscription renew",
    "policy payment",
    "payment is due",
    "is due on",
)

BILL_KEYWORDS_MEDIUM = (
    "billing statement",
    "payment reminder",
    "autopay",
    "auto-pay",
    "scheduled payment",
    "payment confirmation",
    "monthly statement",
    "your statement",
    "payment notice",
    "upcoming payment",
    "renews on",
    "will be charged",
    "next payment",
    "premium due",
)

BILL_KEYWORDS_LOW = (
    "account",
    "billing",
    "payment",
    "subscription",
    "renewal",
    "charged",
    "transaction",
    "policy",
    "premium",
)

AMOUNT_KEYWORD_SCORES = _weighted(
    (r"amount\s*due", 4),
    (r"payment\s*due", 4),
    (r"total\s*due", 4),
    (r"balance\s*due", 4),
    (r"new\s*balance", 3.5),
    (r"statement\s*balance", 3),
    (r"current\s*balance", 2.5),
    (r"total\s*amount", 2.5),
    (r"pay\s*this\s*amount", 4),
    (r"total\s*balance", 3),
    (r"total(?![a-z])", 1.5),
    (r"(?<![a-z])due(?![a-z])", 1),
    (r"owe", 1.5),
    (r"minimum\s*payment", -5),
    (r"min\.?\s*(?:payment\s*)?due", -5),
    (r"minimum\s*due", -5),
    (r"minimum\s*amount", -5),
    (r"previous\s*balance", -3),
    (r"prior\s*balance", -3),
    (r"last\s*statement", -2),
    (r"payments?\s*:?\s*-", -3),
    (r"credits?\s*:?\s*-", -3),
    (r"credit", -2),
    (r"refund", -4),
    (r"cashback", -2),
    (r"reward", -1.5),
    (r"available", -1.5),
    (r"limit", -1.5),
    (r"interest\s*charge", -1),
)

DATE_KEYWORD_SCORES = _weighted(
    (r"due\s*(?:date|on|by)?", 3),
    (r"payment\s*due", 3),
    (r"pay\s*by", 3),
    (r"before", 2),
    (r"auto\s*pay", 2),
    (r"scheduled", 1.5),
    (r"debit\s*date", 2),
    (r"draft\s*date", 2),
    (r"statement\s*(?:date|closing)", -2),
    (r"closing\s*date", -2),
    (r"posted", -1.5),
    (r"transaction\s*date", -1.5),
    (r"as\s*of", -1),
    (r"through", -1),
)

_AMOUNT = r"([\d,]+(?:\.\d{1,2})?)"

TOTAL_AMOUNT_PATTERNS = (
    _i(
        r"(?:total\s*(?:due|balance|amount|owed)?|statement\s*balance|new\s*balance"
        r"|current\s*balance|amount\s*due|balance\s*due)[:\s]*\$?\s*" + _AMOUNT
    ),
    _i(r"\$\s*" + _AMOUNT + r"\s*(?:total|due|owed|balance)"),
    _i(r"payment\s*(?:amount)?[:\s]*\$?\s*" + _AMOUNT),
    _i(r"current\s*account\s*balance[:\s]*\$?\s*" + _AMOUNT),
)

MINIMUM_AMOUNT_PATTERNS = (
    _i(r"\b(?:minimum|min\.?)\s*(?:payment|due|amount)?\s*(?:due)?[:\s]*\$?\s*" + _AMOUNT),
    _i(r"\$\s*" + _AMOUNT + r"\s*(?:minimum|min)\b"),
)

GENERAL_AMOUNT_PATTERNS = (
    _i(r"\$\s*" + _AMOUNT),
    _i(r"(?:amount|total|due|balance|payment)[:\s]*\$?\s*" + _AMOUNT),
    _i(r"(?:USD|US\$)\s*" + _AMOUNT),
)

DATE_PATTERNS = (
    DatePattern(
        "explicit_due_date",
        10,
        _i(rf"(?:due|payment)\s*(?:date|on)?[:\s]*?({_ISO}|{_MONTH_DAY_YEAR}|{_NUMERIC_FULL})"),
    ),
    DatePattern(
        "due_on",
        20,
        _i(rf"due\s+on[:\s]*?({_MONTH_DAY_OPT_YEAR}|{_NUMERIC_OPT_YEAR})"),
    ),
    DatePattern(
        "due_bare",
        30,
        _i(rf"\bdue\s+({_MONTH_DAY_OPT_YEAR}|{_NUMERIC_OPT_YEAR})"),
    ),
    DatePattern(
        "payment_date",
        40,
        _i(rf"payment\s*(?:date|due)?[:\s]+({_NUMERIC_FULL}|{_MONTH_DAY_YEAR})"),
    ),
    DatePattern(
        "by_before",
        50,
        _i(rf"(?:\bby|\bbefore)\s+({_MONTH_DAY_OPT_YEAR}|{_NUMERIC_OPT_YEAR})"),
    ),
    DatePattern(
        "scheduled_for",
        60,
        _i(rf"scheduled\s+(?:for|on)\s+({_MONTH_DAY_OPT_YEAR}|{_NUMERIC_OPT_YEAR})"),
    ),
    DatePattern(
        "debit_date",
        70,
        _i(
            rf"(?:debit|draft|withdrawal|auto\s*pay)\s*(?:date)?[:\s]+"
            rf"({_NUMERIC_FULL}|{_MONTH_DAY_OPT_YEAR})"
        ),
    ),
    DatePattern("due_in_days", 80, _i(r"due\s+in\s+(\d{1,3})\s+days?"), relative_days=True),
    DatePattern(
        "after_amount",
        90,
        _i(rf"\$[\d,]+\.?\d*\s+({_MONTH_DAY_OPT_YEAR}|{_NUMERIC_FULL})"),
    ),
    DatePattern(
        "before_amount",
        100,
        _i(rf"({_MONTH_DAY_OPT_YEAR}|{_NUMERIC_FULL})\s+\$[\d,]+\.?\d*"),
    ),
    DatePattern("on_date", 110, _i(rf"\bon\s+({_MONTH_DAY_YEAR})")),
    DatePattern("standalone_month_name", 120, _i(rf"\b({_MONTH_DAY_YEAR})\b")),
    DatePattern("standalone_numeric", 130, _i(rf"\b({_NUMERIC_FULL})\b")),
)

SENDER_PATTERNS = (
    # Utilities
    _sender(r"electric|power|energy|\bpge\b|\bsce\b|duke energy|con edison", BillCategory.UTILITIES, "Electric"),
    _sender(r"\bgas\b|socalgas|national grid", BillCategory.UTILITIES, "Gas"),
    _sender(r"water|sewer|municipal", BillCategory.UTILITIES, "Water"),
    # Subscriptions
    _sender(r"netflix", BillCategory.SUBSCRIPTION, "Netflix"),
    _sender(r"spotify", BillCategory.SUBSCRIPTION, "Spotify"),
    _sender(r"hulu", BillCategory.SUBSCRIPTION, "Hulu"),
    _sender(r"disney\+|disneyplus", BillCategory.SUBSCRIPTION, "Disney+"),
    _sender(r"\bhbo\b|max\.com", BillCategory.SUBSCRIPTION, "Max"),
    _sender(r"amazon prime|primevideo", BillCategory.SUBSCRIPTION, "Amazon Prime"),
    _sender(r"apple\s?(?:tv|music|one|arcade)", BillCategory.SUBSCRIPTION, "Apple"),
    _sender(r"youtube\s?(?:premium|music)", BillCategory.SUBSCRIPTION, "YouTube Premium"),
    _sender(r"paramount", BillCategory.SUBSCRIPTION, "Paramount+"),
    _sender(r"peacock", BillCategory.SUBSCRIPTION, "Peacock"),
    _sender(r"audible", BillCategory.SUBSCRIPTION, "Audible"),
    _sender(r"adobe", BillCategory.SUBSCRIPTION, "Adobe"),
    _sender(r"microsoft\s?365|office\s?365", BillCategory.SUBSCRIPTION, "Microsoft 365"),
    _sender(r"dropbox", BillCategory.SUBSCRIPTION, "Dropbox"),
    _sender(r"icloud", BillCategory.SUBSCRIPTION, "iCloud"),
    _sender(r"google\s?(?:one|storage|workspace)", BillCategory.SUBSCRIPTION, "Google One"),
    _sender(r"openai|chatgpt", BillCategory.SUBSCRIPTION, "OpenAI"),
    _sender(r"anthropic|claude", BillCategory.SUBSCRIPTION, "Anthropic"),
    _sender(r"\bgym\b|fitness|equinox|24 hour", BillCategory.SUBSCRIPTION, "Gym"),
    # Insurance
    _sender(r"geico", BillCategory.INSURANCE, "GEICO"),
    _sender(r"progressive", BillCategory.INSURANCE, "Progressive"),
    _sender(r"state farm|statefarm", BillCategory.INSURANCE, "State Farm"),
    _sender(r"allstate", BillCategory.INSURANCE, "Allstate"),
    _sender(r"liberty mutual|libertymutual", BillCategory.INSURANCE, "Liberty Mutual"),
    _sender(r"farmers insurance", BillCategory.INSURANCE, "Farmers"),
    _sender(r"\busaa\b", BillCategory.INSURANCE, "USAA"),
    _sender(r"insurance|insur", BillCategory.INSURANCE),
    # Phone
    _sender(r"verizon", BillCategory.PHONE, "Verizon"),
    _sender(r"at&t|att\.com", BillCategory.PHONE, "AT&T"),
    _sender(r"t-mobile|tmobile", BillCategory.PHONE, "T-Mobile"),
    _sender(r"sprint", BillCategory.PHONE, "Sprint"),
    _sender(r"mint mobile|mintmobile", BillCategory.PHONE, "Mint Mobile"),
    _sender(r"visible\.com|\bvisible wireless", BillCategory.PHONE, "Visible"),
    _sender(r"cricket", BillCategory.PHONE, "Cricket"),
    # Internet
    _sender(r"comcast|xfinity", BillCategory.INTERNET, "Xfinity"),
    _sender(r"spectrum", BillCategory.INTERNET, "Spectrum"),
    _sender(r"cox\s?communications|cox\.com", BillCategory.INTERNET, "Cox"),
    _sender(r"frontier", BillCategory.INTERNET, "Frontier"),
    _sender(r"centurylink", BillCategory.INTERNET, "CenturyLink"),
    _sender(r"optimum|altice", BillCategory.INTERNET, "Optimum"),
    _sender(r"google fiber|googlefiber", BillCategory.INTERNET, "Google Fiber"),
    _sender(r"starlink", BillCategory.INTERNET, "Starlink"),
    # Credit cards
    _sender(r"\bchase\b", BillCategory.CREDIT_CARD, "Chase"),
    _sender(r"american express|americanexpress|\bamex\b", BillCategory.CREDIT_CARD, "American Express"),
    _sender(r"capital one|capitalone", BillCategory.CREDIT_CARD, "Capital One"),
    _sender(r"discover", BillCategory.CREDIT_CARD, "Discover"),
    _sender(r"\bciti\b|citibank|citi\.com|citicards", BillCategory.CREDIT_CARD, "Citi"),
    _sender(r"bank\s*of\s*america|bankofamerica", BillCategory.CREDIT_CARD, "Bank of America"),
    _sender(r"wells fargo|wellsfargo", BillCategory.CREDIT_CARD, "Wells Fargo"),
    _sender(r"synchrony", BillCategory.CREDIT_CARD, "Synchrony"),
    _sender(r"barclays|barclaycard", BillCategory.CREDIT_CARD, "Barclays"),
    # Loans
    _sender(r"student loan|navient|nelnet|mohela|aidvantage|fedloan", BillCategory.LOAN, "Student Loan"),
    _sender(r"mortgage|home loan", BillCategory.LOAN, "Mortgage"),
    _sender(r"auto loan|car payment", BillCategory.LOAN, "Auto Loan"),
    _sender(r"\bsofi\b", BillCategory.LOAN, "SoFi"),
    # Rent
    _sender(r"\brent\b|landlord|property management|apartment", BillCategory.RENT),
)

PRODUCT_REFINEMENTS = (
    # Chase; auto and mortgage come first so they win over card names
    _refine("Chase", r"auto\s*(?:account|loan|payment|statement|finance)", "Chase Auto", BillCategory.LOAN),
    _refine("Chase", r"mortgage|home\s*loan", "Chase Mortgage", BillCategory.LOAN),
    _refine("Chase", r"ink\s*business", "Chase Ink Business"),
    _refine("Chase", r"sapphire", "Chase Sapphire"),
    _refine("Chase", r"freedom", "Chase Freedom"),
    _refine("Chase", r"\bslate\b", "Chase Slate"),
    _refine("Chase", r"amazon.*card|card.*amazon", "Chase Amazon"),
    _refine("Chase", r"united.*card|card.*united", "Chase United"),
    _refine("Chase", r"southwest.*card|card.*southwest", "Chase Southwest"),
    _refine("Chase", r"marriott.*card|card.*marriott", "Chase Marriott"),
    _refine("Chase", r"checking|savings|bank\s*account", "Chase Bank"),
    # Capital One
    _refine("Capital One", r"auto\s*(?:loan|payment|finance)", "Capital One Auto", BillCategory.LOAN),
    _refine("Capital One", r"venture", "Capital One Venture"),
    _refine("Capital One", r"quicksilver", "Capital One Quicksilver"),
    _refine("Capital One", r"savor", "Capital One Savor"),
    # Citi
    _refine("Citi", r"custom\s*cash", "Citi Custom Cash"),
    _refine("Citi", r"double\s*cash", "Citi Double Cash"),
    _refine("Citi", r"strata\s*premier", "Citi Strata Premier"),
    _refine("Citi", r"premier(?!\s*miles)", "Citi Premier"),
    _refine("Citi", r"rewards\+|rewards\s*plus", "Citi Rewards+"),
    _refine("Citi", r"simplicity", "Citi Simplicity"),
    _refine("Citi", r"diamond\s*preferred", "Citi Diamond Preferred"),
    _refine("Citi", r"costco", "Citi Costco"),
    _refine("Citi", r"aadvantage|american\s*airlines", "Citi AAdvantage"),
    _refine("Citi", r"thankyou", "Citi ThankYou"),
    _refine("Citi", r"secured", "Citi Secured"),
    _refine("Citi", r"best\s*buy", "Citi Best Buy"),
    _refine("Citi", r"home\s*depot", "Citi Home Depot"),
    # American Express
    _refine("American Express", r"platinum", "Amex Platinum"),
    _refine("American Express", r"gold\s*card", "Amex Gold"),
    _refine("American Express", r"blue\s*cash", "Amex Blue Cash"),
    _refine("American Express", r"everyday", "Amex EveryDay"),
    _refine("American Express", r"delta", "Amex Delta"),
    _refine("American Express", r"hilton", "Amex Hilton"),
    # Bank of America
    _refine("Bank of America", r"customized\s*cash", "BofA Customized Cash"),
    _refine("Bank of America", r"travel\s*rewards", "BofA Travel Rewards"),
    _refine("Bank of America", r"unlimited\s*cash", "BofA Unlimited Cash"),
    # Discover
    _refine("Discover", r"discover\s*it\b|\bit\s*card", "Discover it"),
    _refine("Discover", r"\bmiles\b", "Discover Miles"),
)

PAYMENT_LINK_KEYWORDS = _weighted(
    (r"pay\s*now", 5),
    (r"make\s*(?:a\s*)?payment", 5),
    (r"pay\s*(?:your\s*)?bill", 5),
    (r"pay\s*online", 5),
    (r"pay\s*balance", 4),
    (r"submit\s*payment", 4),
    (r"one[- ]?time\s*payment", 4),
    (r"view\s*(?:&|and)?\s*pay", 4),
    (r"(?:sign|log)\s*in\s*to\s*pay", 4),
    (r"view\s*(?:your\s*)?bill", 3),
    (r"manage\s*payment", 3),
    (r"payment\s*options", 3),
    (r"auto[- ]?pay", 3),
    (r"set\s*up\s*payment", 3),
    (r"view\s*(?:your\s*)?account", 2),
    (r"account\s*details", 1),
    (r"my\s*account", 1),
    (r"view\s*statement", 1),
    (r"billing", 1),
)

PAYMENT_LINK_JUNK_PATTERNS = tuple(
    _i(p)
    for p in (
        r"unsubscribe",
        r"opt[- ]?out",
        r"email\s*preferences",
        r"manage\s*(?:email\s*)?subscriptions?",
        r"notification\s*settings",
        r"privacy",
        r"terms\s*(?:of\s*service|and\s*conditions|of\s*use)",
        r"\blegal\b",
        r"disclaimer",
        r"facebook",
        r"twitter",
        r"instagram",
        r"linkedin",
        r"youtube",
        r"tiktok",
        r"pinterest",
        r"share\s*(?:on|this)",
        r"contact\s*us",
        r"customer\s*(?:support|service)",
        r"help\s*center",
        r"\bfaq",
        r"live\s*chat",
        r"app\s*store",
        r"google\s*play",
        r"download\s*(?:the\s*)?app",
        r"refer\s*a\s*friend",
        r"rewards",
        r"shop\s*now",
        r"learn\s*more",
        r"read\s*more",
        r"click\s*here\s*to\s*view",
        r"view\s*(?:it\s*)?(?:in\s*)?(?:your\s*)?browser",
        r"web\s*version",
    )
)

URL_SHORTENERS = frozenset(
    {
        "bit.ly",
        "bitly.com",
        "t.co",
        "tinyurl.com",
        "goo.gl",
        "ow.ly",
        "is.gd",
        "buff.ly",
        "adf.ly",
        "j.mp",
        "tr.im",
        "cli.gs",
        "short.to",
        "budurl.com",
        "ping.fm",
        "post.ly",
        "just.as",
        "bkite.com",
        "snipr.com",
        "flic.kr",
        "twitthis.com",
        "tiny.cc",
        "lnkd.in",
        "db.tt",
        "qr.ae",
        "cur.lv",
        "ity.im",
        "q.gs",
        "po.st",
        "bc.vc",
        "su.pr",
        "twurl.nl",
        "tl.gd",
        "rebrand.ly",
        "shorturl.at",
        "cutt.ly",
    }
)

KNOWN_BILLER_DOMAINS = frozenset(
    {
        # Utilities
        "pge.com",
        "sce.com",
        "duke-energy.com",
        "coned.com",
        "conedison.com",
        "socalgas.com",
        "nationalgridus.com",
        "nationalgrid.com",
        # Streaming and subscriptions
        "netflix.com",
        "spotify.com",
        "hulu.com",
        "disneyplus.com",
        "hbomax.com",
        "max.com",
        "amazon.com",
        "primevideo.com",
        "apple.com",
        "youtube.com",
        "paramountplus.com",
        "peacocktv.com",
        "audible.com",
        "adobe.com",
        "microsoft.com",
        "dropbox.com",
        "icloud.com",
        "google.com",
        "openai.com",
        "anthropic.com",
        # Fitness
        "planetfitness.com",
        "lafitness.com",
        "equinox.com",
        "24hourfitness.com",
        # Insurance
        "geico.com",
        "progressive.com",
        "statefarm.com",
        "allstate.com",
        "libertymutual.com",
        "farmers.com",
        "usaa.com",
        # Phone
        "verizon.com",
        "verizonwireless.com",
        "att.com",
        "t-mobile.com",
        "sprint.com",
        "mintmobile.com",
        "visible.com",
        "cricketwireless.com",
        # Internet and cable
        "comcast.com",
        "xfinity.com",
        "spectrum.com",
        "charter.com",
        "cox.com",
        "frontier.com",
        "centurylink.com",
        "optimum.com",
        "alticeusa.com",
        "googlefiber.com",
        "starlink.com",
        # Credit cards and banks
        "chase.com",
        "americanexpress.com",
        "capitalone.com",
        "discover.com",
        "citi.com",
        "citibank.com",
        "bankofamerica.com",
        "wellsfargo.com",
        "synchrony.com",
        "synchronybank.com",
        "barclays.com",
        "barclaycard.com",
        "bestbuy.com",
        # Loans
        "navient.com",
        "nelnet.com",
        "mohela.com",
        "aidvantage.com",
        "myfedloan.org",
        "sofi.com",
        # Payment processors
        "paypal.com",
        "venmo.com",
        "zelle.com",
    }
)

BILL_SUBJECT_KEYWORDS = (
    "bill",
    "invoice",
    "payment",
    "statement",
    "amount due",
    "balance due",
    "payment due",
    "your bill",
    "pay now",
    "autopay",
    "auto-pay",
    "due date",
    "minimum payment",
)

PROMOTIONAL_FILTER_KEYWORDS = (
    "special offer",
    "limited time",
    "discount",
    "coupon",
    "promo code",
    "% off",
    "sale",
    "flash sale",
    "free shipping",
    "earn rewards",
    "cashback",
    "unsubscribe",
    "newsletter",
    "shop now",
    "buy now",
)

CALENDAR_SENDERS = (
    "calendar-notification@google.com",
    "calendar@google.com",
    "noreply@google.com/calendar",
)

# Ordered: first matching alias wins.
BASE_COMPANY_ALIASES = (
    ("bank of america", "bofa"),
    ("bankofamerica", "bofa"),
    ("bofa", "bofa"),
    ("american express", "amex"),
    ("americanexpress", "amex"),
    ("amex", "amex"),
    ("capital one", "capital-one"),
    ("capitalone", "capital-one"),
    ("wells fargo", "wells-fargo"),
    ("wellsfargo", "wells-fargo"),
    ("chase", "chase"),
    ("citibank", "citi"),
    ("citi", "citi"),
    ("discover", "discover"),
)

ACCOUNT_LAST4_PATTERNS = tuple(
    _i(p)
    for p in (
        r"\(\s*[.\s]*(\d{4})\s*\)",
        r"ending\s+in\s+(\d{4})",
        r"\*{2,}\s*(\d{4})",
        r"\bx+(\d{4})\b",
        r"account[^0-9\n]{0,30}(\d{4})\b",
    )
)

RECURRENCE_KEYWORDS = (
    (_i(r"bi-?weekly|every\s+(?:two|2)\s+weeks"), "biweekly"),
    (_i(r"\bweekly\b|every\s+week"), "weekly"),
    (_i(r"\bannual(?:ly)?\b|\byearly\b|every\s+year|per\s+year|/\s*yr\b"), "yearly"),
    (_i(r"\bmonthly\b|every\s+month|per\s+month|/\s*mo\b"), "monthly"),
)

DEFAULT_RULES = ExtractionRules(
    skip_keywords=SKIP_KEYWORDS,
    promotional_keywords=PROMOTIONAL_KEYWORDS,
    strong_promo_subject_indicators=STRONG_PROMO_SUBJECT_INDICATORS,
    bill_signals=BILL_SIGNALS,
    bill_keywords_high=BILL_KEYWORDS_HIGH,
    bill_keywords_medium=BILL_KEYWORDS_MEDIUM,
    bill_keywords_low=BILL_KEYWORDS_LOW,
    amount_keyword_scores=AMOUNT_KEYWORD_SCORES,
    date_keyword_scores=DATE_KEYWORD_SCORES,
    total_amount_patterns=TOTAL_AMOUNT_PATTERNS,
    minimum_amount_patterns=MINIMUM_AMOUNT_PATTERNS,
    general_amount_patterns=GENERAL_AMOUNT_PATTERNS,
    date_patterns=tuple(sorted(DATE_PATTERNS, key=lambda p: p.priority)),
    sender_patterns=SENDER_PATTERNS,
    product_refinements=PRODUCT_REFINEMENTS,
    payment_link_keywords=PAYMENT_LINK_KEYWORDS,
    payment_link_junk_patterns=PAYMENT_LINK_JUNK_PATTERNS,
    url_shorteners=URL_SHORTENERS,
    known_biller_domains=KNOWN_BILLER_DOMAINS,
    bill_subject_keywords=BILL_SUBJECT_KEYWORDS,
    promotional_filter_keywords=PROMOTIONAL_FILTER_KEYWORDS,
    calendar_senders=CALENDAR_SENDERS,
    base_company_aliases=BASE_COMPANY_ALIASES,
    account_last4_patterns=ACCOUNT_LAST4_PATTERNS,
    recurrence_keywords=RECURRENCE_KEYWORDS,
)
