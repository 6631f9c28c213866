"""POS blueprint - JSON endpoints driving the cart, prescriptions and checkout."""
from typing import Tuple

from flask import Blueprint, Response, current_app, jsonify, request

from pharmacy_pos.exceptions import ValidationError
from pharmacy_pos.middleware import get_pos_session, save_pos_context

pos_bp = Blueprint('pos', __name__, url_prefix='/pos')


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Expected a JSON object')
    return data


@pos_bp.route('/context', methods=['GET'])
def get_context() -> Response:
    pos = get_pos_session()
    return jsonify({'status': 'ok', 'context': pos.context.to_dict()})


@pos_bp.route('/context', methods=['POST'])
def set_context() -> Response:
    """Set organizational context and the selected patient/doctor (empty string clears)."""
    pos = get_pos_session()
    context = pos.context.merged(_json_body())
    save_pos_context(context)
    current_app.logger.info(f"[CART] {pos.session_id} context set: patient={context.patient_id}")
    return jsonify({'status': 'ok', 'context': context.to_dict()})


@pos_bp.route('/products/search', methods=['GET'])
def product_search() -> Response:
    query = request.args.get('q', '').strip()
    if not query:
        return jsonify({'status': 'ok', 'products': []})
    pos = get_pos_session()
    data = pos.search_products(query)
    data['status'] = 'ok'
    return jsonify(data)


@pos_bp.route('/products/<product_id>/batches', methods=['GET'])
def product_batches(product_id: str) -> Response:
    pos = get_pos_session()
    data = pos.product_batches(product_id)
    data['status'] = 'ok'
    return jsonify(data)


@pos_bp.route('/cart', methods=['GET'])
def cart() -> Response:
    pos = get_pos_session()
    return jsonify({'status': 'ok', 'cart': pos.to_dict()})


@pos_bp.route('/cart/lines', methods=['POST'])
def cart_add() -> Tuple[Response, int]:
    """
    Add a product to the cart.

    Body: {"product_id": ..., "batch_id": optional, "quantity": optional}
    Returns 201 with the line, or 200 with status "requires_batch" and the
    batches to choose from.
    """
    data = _json_body()
    product_id = data.get('product_id')
    if not product_id:
        raise ValidationError('product_id is required')

    pos = get_pos_session()
    result = pos.add_product(str(product_id), data.get('batch_id') or None, data.get('quantity', 1))
    result['cart'] = pos.to_dict()
    return jsonify(result), 201 if result['status'] == 'added' else 200


@pos_bp.route('/cart/lines/<line_id>', methods=['PATCH'])
def cart_update(line_id: str) -> Response:
    pos = get_pos_session()
    line = pos.edit_line(line_id, _json_body())
    return jsonify({'status': 'ok', 'line': line.to_dict(), 'cart': pos.to_dict()})


@pos_bp.route('/cart/lines/<line_id>', methods=['DELETE'])
def cart_remove(line_id: str) -> Response:
    pos = get_pos_session()
    pos.remove_line(line_id)
    return jsonify({'status': 'ok', 'cart': pos.to_dict()})


@pos_bp.route('/cart/clear', methods=['POST'])
def cart_clear() -> Response:
    pos = get_pos_session()
    pos.clear()
    return jsonify({'status': 'ok', 'cart': pos.to_dict()})


@pos_bp.route('/prescriptions/import', methods=['POST'])
def prescription_import() -> Response:
    """
    Resolve and reserve prescription lines.

    Per-line failures do not fail the request: they are listed in the report.
    """
    data = _json_body()
    pos = get_pos_session()
    report = pos.import_prescription(data.get('lines'))
    return jsonify({
        'status': 'ok' if report.ok else 'partial',
        'report': report.to_dict(),
        'cart': pos.to_dict(),
    })


@pos_bp.route('/checkout', methods=['POST'])
def checkout() -> Tuple[Response, int]:
    data = _json_body()
    pos = get_pos_session()
    receipt = pos.checkout(data.get('payment'))
    return jsonify({'status': 'ok', 'receipt': receipt.to_dict(), 'cart': pos.to_dict()}), 201


@pos_bp.route('/teardown', methods=['POST'])
def teardown() -> Tuple[Response, int]:
    """Beacon target for page unload: release every hold without waiting."""
    pos = get_pos_session()
    released = pos.teardown()
    return jsonify({'status': 'ok', 'released': released}), 202
