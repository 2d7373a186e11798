import logging
from fastapi import APIRouter, Depends, HTTPException

from tiktik.auth import get_current_viewer
from tiktik.dependencies import get_upload_signer
from tiktik.models import UploadUrlRequest, UploadUrlResponse, Viewer
from tiktik.uploads import UploadSigner

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api")


@router.post("/generate-upload-url", response_model=UploadUrlResponse)
async def generate_upload_url(
    payload: UploadUrlRequest,
    viewer: Viewer = Depends(get_current_viewer),
    signer: UploadSigner = Depends(get_upload_signer),
):
    """Issue a signed URL the client uploads the file to directly"""
    if not payload.fileName or not payload.fileType:
        raise HTTPException(status_code=400, detail="Missing required fields")

    logger.info(f"Generating upload URL for {payload.fileName} ({viewer.uid})")
    try:
        return signer.generate(payload.kind, payload.fileName, payload.fileType)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error generating upload URL: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to generate upload URL")
