import logging
from typing import Any, Dict, List

from sqlalchemy import or_

from models import Document, Integration
from services.platform_connectors import CONNECTORS

logger = logging.getLogger(__name__)


class DocumentSearchManager:
    """Searches the firm's stored documents and ranks them by term frequency."""

    def __init__(self, firm_id: int):
        self.firm_id = firm_id

    @staticmethod
    def relevance(document: Document, terms: List[str]) -> float:
        name = (document.name or '').lower()
        description = (document.description or '').lower()
        content = (document.content or '').lower()
        score = 0.0
        for term in terms:
            score += 3.0 * name.count(term) + 2.0 * description.count(term) + min(content.count(term), 20)
        return score

    def search_all(self, query: str, max_results: int = 20) -> Dict[str, Any]:
        terms = [t for t in (query or '').lower().split() if t]
        if not terms:
            return {'query': query, 'results': [], 'total_found': 0}

        clauses = []
        for term in terms:
            like = f"%{term}%"
            clauses.extend([Document.name.ilike(like), Document.description.ilike(like), Document.content.ilike(like)])
        candidates = Document.query.filter(Document.firm_id == self.firm_id, or_(*clauses)).all()

        ranked = sorted(
            ((self.relevance(d, terms), d) for d in candidates),
            key=lambda pair: (-pair[0], -(pair[1].id or 0)),
        )
        results = []
        for score, doc in ranked[:max_results]:
            item = doc.to_dict()
            item['source'] = 'internal'
            item['relevance_score'] = round(score, 2)
            item['excerpt'] = self._excerpt(doc.content, terms)
            results.append(item)
        logger.info(f"Document search '{query}' matched {len(ranked)} documents for firm {self.firm_id}")
        return {'query': query, 'results': results, 'total_found': len(ranked)}

    @staticmethod
    def _excerpt(content, terms, width=160):
        if not content:
            return None
        lowered = content.lower()
        positions = [lowered.find(t) for t in terms if lowered.find(t) >= 0]
        start = max(0, min(positions) - width // 4) if positions else 0
        snippet = content[start:start + width].strip()
        return ('...' if start > 0 else '') + snippet + ('...' if start + width < len(content) else '')

    def get_connection_status(self) -> Dict[str, Any]:
        rows = Integration.query.filter_by(firm_id=self.firm_id, type='platform').all()
        external = {r.provider: r.status for r in rows if CONNECTORS.get(r.provider) and CONNECTORS[r.provider].kind == 'documents'}
        return {
            'internal': {
                'connected': True,
                'document_count': Document.query.filter_by(firm_id=self.firm_id).count(),
            },
            'external': external,
        }
