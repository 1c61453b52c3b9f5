from fastapi import APIRouter
from blueprint.services import kb_store

router = APIRouter()

@router.post("/reload-kb")
def reload_kb():
    kb = kb_store.reload()
    return {"status": "reloaded", "kb1_chars": len(kb.kb1), "kb2_chars": len(kb.kb2)}
