import re
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

import requests
from bs4 import BeautifulSoup

from models.airdrop_models import SourceTypeEnum
from utils.errors import SourceUnavailable
from utils.log_utils import get_logger

logger = get_logger("source_fetch")

UNKNOWN_SOURCE_URL = 'https://unknown.com'

AIRDROP_ALERT_URL = 'https://airdropalert.com/'
COINGECKO_API = 'https://api.coingecko.com/api/v3'
GITHUB_SEARCH_API = 'https://api.github.com/search/repositories'

# 来源可信度（静态，按来源类型，不做合并 / 平均）
SOURCE_CONFIDENCE = {
    'known-defi': 95,
    'coingecko': 90,
    'airdrop-alert': 70,
    'github': 60,
}
DEFAULT_CONFIDENCE = 50

SOURCE_TYPES = {
    'coingecko': SourceTypeEnum.api,
    'github': SourceTypeEnum.api,
    'airdrop-alert': SourceTypeEnum.scraping,
    'known-defi': SourceTypeEnum.manual,
    'monitoring': SourceTypeEnum.monitoring,
}

# 创建时直接给 community / low 的可信来源
TRUSTED_SOURCES = ('coingecko', 'known-defi')

KNOWN_DEFI_AIRDROPS = [
    {
        'name': 'Arbitrum',
        'symbol': 'ARB',
        'contract_address': '0x912CE59144191C1204E64559FE8253a0e49E6548',
        'token_address': '0x912CE59144191C1204E64559FE8253a0e49E6548',
        'blockchain': 'arbitrum',
        'description': 'Arbitrum governance token airdrop for early users',
        'website': 'https://arbitrum.io',
    },
    {
        'name': 'Optimism',
        'symbol': 'OP',
        'contract_address': '0x4200000000000000000000000000000000000042',
        'token_address': '0x4200000000000000000000000000000000000042',
        'blockchain': 'optimism',
        'description': 'Optimism governance token for Layer 2 users',
        'website': 'https://optimism.io',
    },
]

DATE_FORMATS = ('%Y-%m-%d', '%Y/%m/%d', '%d/%m/%Y', '%b %d, %Y', '%B %d, %Y', '%d %b %Y', '%d %B %Y')


def source_confidence(source):
    return SOURCE_CONFIDENCE.get(source, DEFAULT_CONFIDENCE)


def source_type(source):
    return SOURCE_TYPES.get(source, SourceTypeEnum.api)


def extract_symbol(name):
    """'Project (SYM)' -> 'SYM'，否则取名字前 4 个字母大写"""
    match = re.search(r'\(([A-Z0-9]+)\)', name or '')
    if match:
        return match.group(1)
    letters = re.sub(r'[^A-Za-z]', '', name or '')
    return letters[:4].upper()


def parse_date(text):
    if not text:
        return None
    if isinstance(text, datetime):
        return text
    text = text.strip()
    try:
        parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


@dataclass
class AirdropCandidate:
    """未经合并的单条来源数据"""
    name: str
    symbol: str
    blockchain: str = 'ethereum'
    description: str = ''
    contract_address: str = ''
    token_address: str = ''
    website: Optional[str] = None
    end_date: Optional[datetime] = None
    total_value: Optional[str] = None
    status: str = 'active'
    source: str = 'manual'

    def __post_init__(self):
        self.name = (self.name or '').strip()
        self.symbol = (self.symbol or '').strip()
        self.blockchain = (self.blockchain or 'ethereum').lower()
        self.contract_address = (self.contract_address or '').strip().lower()
        self.token_address = (self.token_address or '').strip().lower()
        self.end_date = parse_date(self.end_date)

    @property
    def source_url(self):
        return self.website or UNKNOWN_SOURCE_URL

    @property
    def dedup_key(self):
        return f"{self.name.lower()}-{self.symbol.lower()}"


@dataclass
class FetchResult:
    candidates: List[AirdropCandidate] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class SourceFetchService:
    """
    外部来源抓取：airdrop-alert（HTML）、coingecko、已知 DeFi 列表、github 搜索
    每个来源独立并发执行，单个来源失败只记录错误
    """

    def __init__(self, chains, session=None, timeout=15, sources=None):
        self.chains = chains
        self.session = session or requests.Session()
        self.timeout = timeout
        self.sources = sources or {
            'airdrop-alert': self.fetch_airdrop_alert,
            'coingecko': self.fetch_coingecko,
            'known-defi': self.fetch_known_defi,
            'github': self.fetch_github,
        }

    def _get(self, source, url, **kwargs):
        try:
            resp = self.session.get(url, timeout=self.timeout, **kwargs)
            resp.raise_for_status()
            return resp
        except requests.exceptions.RequestException as e:
            raise SourceUnavailable(source, str(e)) from e

    def fetch_all(self) -> FetchResult:
        result = FetchResult()
        collected = []
        with ThreadPoolExecutor(max_workers=len(self.sources) or 1) as executor:
            futures = {executor.submit(fetch): name for name, fetch in self.sources.items()}
            for future in as_completed(futures):
                name = futures[future]
                try:
                    candidates = future.result()
                except SourceUnavailable as e:
                    logger.warning(f"[fetch] {e}")
                    result.errors.append(str(e))
                    continue
                except Exception as e:
                    logger.error(f"[fetch] source {name} failed: {e}")
                    result.errors.append(str(SourceUnavailable(name, str(e))))
                    continue
                logger.info(f"[fetch] {name}: {len(candidates)} candidates")
                collected.append((name, candidates))

        # 按注册顺序合并，保证去重"先到先得"稳定
        order = list(self.sources)
        collected.sort(key=lambda item: order.index(item[0]))
        result.candidates = self.deduplicate([c for _, batch in collected for c in batch])
        logger.info(f"[fetch] total {len(result.candidates)} unique candidates, {len(result.errors)} source errors")
        return result

    @staticmethod
    def deduplicate(candidates):
        seen = set()
        unique = []
        for c in candidates:
            if c.dedup_key in seen:
                continue
            seen.add(c.dedup_key)
            unique.append(c)
        return unique

    def fetch_airdrop_alert(self):
        resp = self._get('airdrop-alert', AIRDROP_ALERT_URL,
                         headers={'User-Agent': 'Mozilla/5.0 (compatible; AirdropSync/1.0)'})
        soup = BeautifulSoup(resp.text, 'html.parser')

        candidates = []
        for item in soup.select('.airdrop-item'):
            def text(selector):
                el = item.select_one(selector)
                return el.get_text(strip=True) if el else ''

            name = text('.airdrop-title')
            description = text('.airdrop-description')
            if not name or not description:
                continue
            candidates.append(AirdropCandidate(
                name=name,
                symbol=extract_symbol(name),
                description=description,
                end_date=text('.airdrop-end-date') or None,
                total_value=text('.airdrop-value') or None,
                status='active',
                source='airdrop-alert',
            ))
        return candidates

    def fetch_coingecko(self):
        resp = self._get('coingecko', f"{COINGECKO_API}/coins/markets", params={
            'vs_currency': 'usd',
            'category': 'airdrop',
            'order': 'market_cap_desc',
            'per_page': 50,
            'page': 1,
            'sparkline': 'false',
        })
        try:
            coins = resp.json()
        except ValueError as e:
            raise SourceUnavailable('coingecko', f"invalid json: {e}") from e

        candidates = []
        for coin in coins or []:
            if not coin.get('name') or not coin.get('symbol'):
                continue
            contract = coin.get('contract_address') or ''
            market_cap = coin.get('market_cap')
            homepage = coin.get('homepage') or []
            candidates.append(AirdropCandidate(
                name=coin['name'],
                symbol=coin['symbol'].upper(),
                contract_address=contract,
                token_address=contract,
                description=f"{coin['name']} token - Market Cap: ${market_cap:,}" if market_cap
                else f"{coin['name']} token",
                website=homepage[0] if homepage else None,
                status='active',
                source='coingecko',
            ))
        return candidates

    def _contract_has_abi(self, address, blockchain):
        config = self.chains.get(blockchain)
        if config is None or not config.has_explorer:
            return False
        resp = self._get('known-defi', config.explorer_api, params={
            'module': 'contract',
            'action': 'getabi',
            'address': address,
            'apikey': config.explorer_api_key,
        })
        try:
            return resp.json().get('status') == '1'
        except ValueError:
            return False

    def fetch_known_defi(self):
        candidates = []
        for entry in KNOWN_DEFI_AIRDROPS:
            try:
                live = self._contract_has_abi(entry['contract_address'], entry['blockchain'])
            except SourceUnavailable as e:
                logger.warning(f"[fetch] known-defi check {entry['name']} failed: {e}")
                continue
            if live:
                candidates.append(AirdropCandidate(status='active', source='known-defi', **entry))
        return candidates

    def fetch_github(self):
        resp = self._get('github', GITHUB_SEARCH_API, params={
            'q': 'airdrop token created:>2024-01-01',
            'sort': 'stars',
            'order': 'desc',
            'per_page': 20,
        }, headers={'Accept': 'application/vnd.github+json'})
        try:
            items = resp.json().get('items', [])
        except ValueError as e:
            raise SourceUnavailable('github', f"invalid json: {e}") from e

        candidates = []
        for repo in items:
            description = repo.get('description') or ''
            if 'airdrop' not in description.lower():
                continue
            candidates.append(AirdropCandidate(
                name=repo['name'],
                symbol=extract_symbol(repo['name']),
                description=description,
                website=repo.get('homepage') or repo.get('html_url'),
                status='upcoming',
                source='github',
            ))
        return candidates
