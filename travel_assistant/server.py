import logging
import uuid

from dotenv import load_dotenv
from flask import Flask, jsonify, request

from travel_assistant.config import AssistantConfig
from travel_assistant.graph.graph import ConversationOrchestrator
from travel_assistant.wiring import build_assistant


def create_app(assistant: ConversationOrchestrator | None = None) -> Flask:
    app = Flask(__name__)
    app.config["ASSISTANT"] = assistant or build_assistant()

    def _assistant() -> ConversationOrchestrator:
        return app.config["ASSISTANT"]

    @app.get("/health")
    def health():
        return jsonify({"status": "ok"})

    @app.post("/chat")
    def chat():
        body = request.get_json(force=True, silent=True) or {}
        user_input = (body.get("message") or "").strip()
        if not user_input:
            return jsonify({"error": "message is required"}), 400

        session_id = (body.get("session_id") or "").strip() or uuid.uuid4().hex
        user_id = (body.get("user_id") or "").strip() or None

        out = _assistant().handle(session_id, user_input, user_id)
        return jsonify({
            "session_id": session_id,
            "reply": out["reply"],
            "intent": out.get("intent"),
            "results": out.get("results", {}),
            "trace": out.get("trace", []),
        })

    # ---------------------------
    # Memory introspection
    # ---------------------------
    @app.get("/memory")
    def memory_keys():
        return jsonify({"sessions": _assistant().list_sessions()})

    @app.get("/memory/<session_id>")
    def memory_dump(session_id: str):
        dump = _assistant().dump_session(session_id)
        if dump is None:
            return jsonify({"error": f"unknown session {session_id}"}), 404
        return jsonify(dump)

    @app.delete("/memory/<session_id>")
    def memory_clear(session_id: str):
        _assistant().clear_session(session_id)
        return "", 204

    return app


if __name__ == "__main__":
    load_dotenv()
    config = AssistantConfig.from_env(dotenv=False)
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app(build_assistant(config))
    app.run(host="0.0.0.0", port=5000, debug=False)
