"""
Lance la caisse avec uvicorn: `python -m caisse`.

Variables lues:
- HOST / PORT: interface et port d'écoute (0.0.0.0:8000 par défaut)
- UVICORN_RELOAD: reload auto en dev ("1"/"true"/"yes")
- LOG_LEVEL: niveau commun aux logs de la caisse et d'uvicorn
"""
import os

import uvicorn

from caisse.config import LOG_LEVEL

def main() -> None:
    reload_flag = os.environ.get("UVICORN_RELOAD", "").lower() in ("1", "true", "yes")
    uvicorn.run(
        "caisse.asgi:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", 8000)),
        reload=reload_flag,
        log_level=LOG_LEVEL.lower(),
    )

if __name__ == "__main__":
    main()
