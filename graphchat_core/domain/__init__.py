"""领域层模型与协议。

包含：
- models: 节点、附件、Turn、内容块与 SendResult 等数据模型。
- stores: AttachmentStore / PayloadStore 协议与载荷键约定。
- exceptions: 业务异常类型定义。
"""
