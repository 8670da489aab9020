# criptocracia/api.py

# Read-only HTTP view of the voter core: relay health, visible elections and
# the latest results. Every response is built from immutable snapshots.

import logging
from typing import Dict

from flask import Flask, abort, jsonify

logger = logging.getLogger(__name__)


def _relay_health(transport) -> Dict:
    if transport is None:
        return {"relays": [], "overall_ok": False}
    statuses = [s.to_dict() for s in transport.relay_status()]
    return {"relays": statuses, "overall_ok": any(s["is_connected"] for s in statuses)}


def _result_body(result) -> Dict:
    body = result.to_dict()
    body.update({
        "counts": {str(cid): count for cid, count in result.votes},
        "total_votes": result.total_votes,
        "ranking": [[cid, count] for cid, count in result.ranking()],
        "winner": result.winner(),
        "percentages": {str(cid): round(p, 2) for cid, p in result.percentages().items()},
    })
    return body


def create_app(elections=None, results=None, transport=None) -> Flask:
    """Build the observer app around an ElectionSyncEngine, a ResultsAggregator
    and a Transport; any of them may be omitted."""
    app = Flask(__name__)

    @app.get("/health")
    def health():
        res = _relay_health(transport)
        if elections is not None:
            res["elections"] = {
                "loading": elections.is_loading,
                "error": elections.error,
                "count": len(elections.elections),
            }
        code = 200 if res["overall_ok"] else 503
        return jsonify(res), code

    @app.get("/elections")
    def list_elections():
        items = [e.to_dict() for e in elections.elections] if elections is not None else []
        return jsonify({"elections": items})

    @app.get("/elections/<election_id>")
    def get_election(election_id):
        election = elections.get(election_id) if elections is not None else None
        if election is None:
            abort(404)
        return jsonify(election.to_dict())

    @app.get("/results/<election_id>")
    def get_results(election_id):
        result = results.get(election_id) if results is not None else None
        if result is None:
            abort(404)
        return jsonify(_result_body(result))

    @app.errorhandler(404)
    def not_found(_):
        return jsonify({"error": "not found"}), 404

    logger.debug("Observer API created")
    return app
