from fastapi import APIRouter, Request


router = APIRouter()


@router.get("/health")
async def health(request: Request):
    """Health check endpoint"""
    registry = request.app.state.registry
    jobs = registry.list_jobs()

    return {
        "status": "healthy",
        "jobs": len(jobs),
        "running_jobs": sum(1 for job in jobs if job.running),
    }
