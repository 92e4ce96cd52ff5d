import logging

import uvicorn

if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger(__name__).info("Starting server at http://127.0.0.1:8000")
    uvicorn.run(
        "ticketvault.api:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
