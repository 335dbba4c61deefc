from decimal import Decimal

from app.fsm.cart import CartItem, OrderContext, format_naira


def _item(product_id, name, quantity, price):
    return CartItem.create(product_id=product_id, product_name=name, quantity=quantity, unit_price=Decimal(price))


def test_totals_are_rounded_per_line_before_summing():
    context = OrderContext()
    context.add_item(_item(1, "Ankara Print Dress", 1, "25000.00"))
    sandals = _item(4, "Leather Sandals", 3, "12999.99")
    sandals.discount_percent = Decimal(10)
    context.add_item(sandals)

    assert context.items[1].final_unit_price == Decimal("11699.99")
    assert context.items[1].line_total == Decimal("35099.97")
    assert context.subtotal == Decimal("60099.97")
    assert context.total_discount == Decimal("3900.00")
    assert context.grand_total == Decimal("60099.97")


def test_adding_same_product_merges_lines():
    context = OrderContext()
    context.add_item(_item(1, "Ankara Print Dress", 2, "25000"))
    context.add_item(_item(1, "Ankara Print Dress", 3, "25000"))

    assert len(context.items) == 1
    assert context.items[0].quantity == 5
    assert context.items[0].line_total == Decimal("125000.00")
    assert context.subtotal == Decimal("125000.00")


def test_grand_total_includes_delivery_fee():
    context = OrderContext(delivery_fee=Decimal("1500"))
    context.add_item(_item(1, "Ankara Print Dress", 1, "25000"))

    assert context.grand_total == Decimal("26500.00")


def test_update_quantity_to_zero_removes_line():
    context = OrderContext()
    context.add_item(_item(1, "Ankara Print Dress", 1, "25000"))
    context.add_item(_item(3, "Adire Scarf", 2, "4500"))

    assert context.update_item_quantity(0, 0) is True
    assert [item.product_name for item in context.items] == ["Adire Scarf"]
    assert context.subtotal == Decimal("9000.00")
    assert context.update_item_quantity(5, 1) is False


def test_document_round_trip_recomputes_totals():
    context = OrderContext(delivery_address="15 Admiralty Way, Lekki", delivery_fee=Decimal("1500"))
    context.add_item(_item(1, "Ankara Print Dress", 1, "25000"))

    document = context.to_document()
    document["grand_total"] = "1.00"
    restored = OrderContext.from_document(document)

    assert restored.grand_total == Decimal("26500.00")
    assert restored.delivery_address == "15 Admiralty Way, Lekki"
    assert OrderContext.from_document(None).is_empty


def test_stored_cart_with_unknown_keys_still_loads():
    document = OrderContext(delivery_notes="Gate 2").to_document()
    document["delivery_phone"] = "2348012345678"

    restored = OrderContext.from_document(document)

    assert restored.delivery_notes == "Gate 2"
    assert "delivery_phone" not in restored.to_document()
    assert set(restored.to_document()) >= {"items", "delivery_address", "delivery_notes", "grand_total"}


def test_ready_for_confirmation_requires_items_and_address():
    context = OrderContext()
    assert context.is_ready_for_confirmation() is False

    context.add_item(_item(1, "Ankara Print Dress", 1, "25000"))
    assert context.is_ready_for_confirmation() is False

    context.delivery_address = "   "
    assert context.is_ready_for_confirmation() is False

    context.delivery_address = "15 Admiralty Way"
    assert context.is_ready_for_confirmation() is True


def test_summary_lists_lines_discount_and_delivery():
    context = OrderContext(delivery_fee=Decimal("1500"))
    context.add_item(_item(1, "Ankara Print Dress", 1, "25000"))
    sandals = _item(4, "Leather Sandals", 3, "12999.99")
    sandals.discount_percent = Decimal(10)
    context.add_item(sandals)

    summary = context.summary()

    assert summary.startswith("*Your Order:*")
    assert "1. Ankara Print Dress x1 - NGN 25000" in summary
    assert "2. Leather Sandals x3 - NGN 35100" in summary
    assert "*Subtotal:* NGN 60100" in summary
    assert "*Discount:* -NGN 3900" in summary
    assert "*Delivery:* NGN 1500" in summary
    assert summary.endswith("*Total:* NGN 61600")


def test_empty_summary():
    assert OrderContext().summary() == "Your cart is empty."
    assert format_naira(None) == "0"
