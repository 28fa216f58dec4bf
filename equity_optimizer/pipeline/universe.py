"""
Sector-tagged stock universe.

A curated list of large US equities grouped by GICS-style sector. Sector tags
here are only a fallback: the provider's own sector wins when present.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

STOCK_UNIVERSE: Dict[str, List[str]] = {
    "Technology": [
        "AAPL", "MSFT", "GOOGL", "META", "NVDA", "AMD", "INTC", "CRM", "ORCL", "ADBE",
        "CSCO", "IBM", "NOW", "INTU", "AMAT", "MU", "LRCX", "KLAC", "SNPS", "CDNS",
        "PANW", "CRWD", "FTNT", "ZS", "DDOG", "SNOW", "PLTR", "NET", "UBER", "ABNB",
    ],
    "Healthcare": [
        "JNJ", "UNH", "PFE", "MRK", "ABBV", "LLY", "TMO", "ABT", "BMY", "AMGN",
        "GILD", "VRTX", "REGN", "ISRG", "MDT", "SYK", "BSX", "ZBH", "EW", "DXCM",
        "MRNA", "BIIB", "ILMN", "A", "DHR",
    ],
    "Financials": [
        "JPM", "BAC", "WFC", "GS", "MS", "C", "BLK", "SCHW", "AXP", "V",
        "MA", "PYPL", "COF", "USB", "PNC", "TFC", "AIG", "MET", "PRU", "ALL",
        "TRV", "CB", "AFL", "ICE", "CME",
    ],
    "Consumer Discretionary": [
        "AMZN", "TSLA", "HD", "NKE", "MCD", "SBUX", "TGT", "LOW", "TJX", "BKNG",
        "MAR", "HLT", "CMG", "YUM", "DPZ", "ROST", "ORLY", "AZO", "BBY", "DHI",
        "LEN", "PHM", "NVR", "GM", "F",
    ],
    "Consumer Staples": [
        "PG", "KO", "PEP", "WMT", "COST", "PM", "MO", "CL", "KHC", "MDLZ",
        "GIS", "K", "HSY", "SJM", "CAG", "KMB", "CHD", "EL", "STZ", "KDP",
    ],
    "Energy": [
        "XOM", "CVX", "COP", "SLB", "EOG", "MPC", "PSX", "VLO", "OXY", "PXD",
        "DVN", "HES", "HAL", "BKR", "FANG", "MRO", "APA", "CTRA", "OVV", "EQT",
    ],
    "Industrials": [
        "CAT", "BA", "HON", "UPS", "RTX", "LMT", "GE", "DE", "MMM", "UNP",
        "CSX", "NSC", "FDX", "WM", "RSG", "EMR", "ETN", "ITW", "PH", "ROK",
        "GD", "NOC", "TXT", "LHX", "AXON",
    ],
    "Utilities": [
        "NEE", "DUK", "SO", "D", "AEP", "EXC", "SRE", "XEL", "ED", "PEG",
        "WEC", "ES", "AWK", "DTE", "AEE", "CMS", "CNP", "FE", "EVRG", "NI",
    ],
    "Real Estate": [
        "AMT", "PLD", "CCI", "EQIX", "SPG", "PSA", "O", "WELL", "DLR", "AVB",
        "EQR", "VTR", "ARE", "MAA", "UDR", "ESS", "INVH", "SUI", "ELS", "PEAK",
    ],
    "Materials": [
        "LIN", "APD", "SHW", "ECL", "FCX", "NEM", "NUE", "DOW", "DD", "PPG",
        "VMC", "MLM", "ALB", "CTVA", "FMC", "CE", "EMN", "IFF", "PKG", "IP",
    ],
    "Communication Services": [
        "NFLX", "DIS", "CMCSA", "VZ", "T", "TMUS", "CHTR", "WBD", "PARA", "FOX",
        "OMC", "IPG", "TTWO", "EA", "MTCH", "LYV", "RBLX", "SPOT", "PINS", "SNAP",
    ],
}

SECTORS: List[str] = list(STOCK_UNIVERSE)


def get_universe(sectors: Optional[Iterable[str]] = None) -> List[str]:
    """
    Tickers for the requested sectors (all sectors by default).

    Raises:
        ValueError: If a sector name is unknown
    """
    if sectors is None:
        selected = SECTORS
    else:
        selected = list(sectors)
        unknown = [s for s in selected if s not in STOCK_UNIVERSE]
        if unknown:
            raise ValueError(f"Unknown sector(s): {', '.join(unknown)}. Choose from: {', '.join(SECTORS)}")

    tickers: List[str] = []
    seen = set()
    for sector in selected:
        for ticker in STOCK_UNIVERSE[sector]:
            if ticker not in seen:
                seen.add(ticker)
                tickers.append(ticker)
    return tickers


def sector_for(ticker: str) -> Optional[str]:
    ticker = ticker.upper()
    for sector, tickers in STOCK_UNIVERSE.items():
        if ticker in tickers:
            return sector
    return None
