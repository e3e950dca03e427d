import json
import logging
from contextlib import contextmanager

from bson import ObjectId, json_util
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pymongo import ReturnDocument
from pymongo.errors import OperationFailure, PyMongoError

from product_api.exceptions import DatabaseUnavailableError
from product_api.schemas import ProductListResponse, ProductResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Products"])

COLLECTION_NAME = "products"
FORM_CONTENT_TYPES = ("multipart/form-data", "application/x-www-form-urlencoded")


def get_collection(request: Request):
    return request.app.state.db_manager.get_collection(COLLECTION_NAME)


def serialize(document):
    return json.loads(json_util.dumps(document))


def parse_object_id(product_id: str) -> ObjectId:
    if not ObjectId.is_valid(product_id):
        raise HTTPException(status_code=400, detail="Invalid product ID")
    return ObjectId(product_id)


async def read_body(request: Request) -> dict:
    """Product fields from a JSON object or from form fields."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(FORM_CONTENT_TYPES):
        form = await request.form()
        fields = {}
        for key, value in form.multi_items():
            # Text fields only; uploaded files are not stored.
            if not isinstance(value, str):
                continue
            if key in fields:
                previous = fields[key]
                fields[key] = previous + [value] if isinstance(previous, list) else [previous, value]
            else:
                fields[key] = value
    else:
        raw = await request.body()
        if not raw:
            fields = {}
        else:
            try:
                fields = json.loads(raw)
            except ValueError:
                raise HTTPException(status_code=400, detail="Malformed JSON body")
            if not isinstance(fields, dict):
                raise HTTPException(status_code=400, detail="Request body must be a JSON object")

    fields.pop("_id", None)
    if not fields:
        raise HTTPException(status_code=400, detail="Request body is empty")
    return fields


@contextmanager
def driver_errors(action: str):
    try:
        yield
    except OperationFailure as e:
        # The server refused the command, e.g. conflicting update paths.
        logger.warning("Server rejected request to %s: %s", action, e)
        raise HTTPException(status_code=400, detail=f"Could not {action}")
    except PyMongoError as e:
        logger.error("Failed to %s: %s", action, e)
        raise DatabaseUnavailableError(f"Failed to {action}") from e


@router.get("", response_model=ProductListResponse)
async def get_products(
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    collection=Depends(get_collection),
):
    with driver_errors("list products"):
        total_count = await collection.count_documents({})
        cursor = collection.find({}).skip(skip).limit(limit)
        documents = await cursor.to_list(length=limit)

    return {
        "message": "Products retrieved successfully",
        "payload": serialize(documents),
        "total_count": total_count,
    }


@router.get("/{product_id}", response_model=ProductResponse)
async def get_product(product_id: str, collection=Depends(get_collection)):
    object_id = parse_object_id(product_id)
    with driver_errors("read product"):
        document = await collection.find_one({"_id": object_id})

    if not document:
        raise HTTPException(status_code=404, detail="Product not found")

    return {"message": "Successfully retrieved the product", "payload": serialize(document)}


@router.post("", response_model=ProductResponse, status_code=status.HTTP_201_CREATED)
async def create_product(request: Request, collection=Depends(get_collection)):
    document = await read_body(request)
    with driver_errors("create product"):
        result = await collection.insert_one(document)

    document["_id"] = result.inserted_id
    logger.info("Created product %s", result.inserted_id)
    return {"message": "Product created successfully", "payload": serialize(document)}


@router.put("/{product_id}", response_model=ProductResponse)
async def update_product(product_id: str, request: Request, collection=Depends(get_collection)):
    object_id = parse_object_id(product_id)
    fields = await read_body(request)
    with driver_errors("update product"):
        document = await collection.find_one_and_update(
            {"_id": object_id},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )

    if not document:
        raise HTTPException(status_code=404, detail="Product not found")

    return {"message": "Product updated successfully", "payload": serialize(document)}


@router.delete("/{product_id}", response_model=ProductResponse)
async def delete_product(product_id: str, collection=Depends(get_collection)):
    object_id = parse_object_id(product_id)
    with driver_errors("delete product"):
        document = await collection.find_one_and_delete({"_id": object_id})

    if not document:
        raise HTTPException(status_code=404, detail="Product not found")

    logger.info("Deleted product %s", product_id)
    return {"message": "Product deleted successfully", "payload": serialize(document)}
