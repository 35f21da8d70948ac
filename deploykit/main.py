from fastapi import FastAPI

from deploykit.api.deploy_routes import router as deploy_router

app = FastAPI(title="deploykit - remote deployment engine")

app.include_router(deploy_router, prefix="/api/deploy", tags=["deploy"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
